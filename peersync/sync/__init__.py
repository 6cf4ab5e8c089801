"""
Sync Module - Session and Coordination

Owns the synchronized folder and ties it to the peer connection.
"""

from .session import SyncSession, SyncedFileRecord
from .coordinator import SyncCoordinator, SyncReport, send_with_retry

__all__ = [
    'SyncSession',
    'SyncedFileRecord',
    'SyncCoordinator',
    'SyncReport',
    'send_with_retry',
]
