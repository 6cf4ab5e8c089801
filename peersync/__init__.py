"""
PeerSync - Two-Peer Folder Synchronization

Keeps a flat folder mirrored between two directly-linked peers by
pushing ADD and DELETE operations over a point-to-point TCP stream.
"""

from .config import Config, load_config
from .errors import SyncError, NetworkError, ProtocolError, FilesystemError
from .sync import SyncCoordinator, SyncSession, SyncedFileRecord, SyncReport
from .transfer import (
    StatusKind, TransferStatus, StatusPublisher,
    TransferServer, TransferClient,
)

__version__ = '1.0.0'

__all__ = [
    'Config',
    'load_config',
    'SyncError',
    'NetworkError',
    'ProtocolError',
    'FilesystemError',
    'SyncCoordinator',
    'SyncSession',
    'SyncedFileRecord',
    'SyncReport',
    'StatusKind',
    'TransferStatus',
    'StatusPublisher',
    'TransferServer',
    'TransferClient',
]
