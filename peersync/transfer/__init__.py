"""
Transfer Module - Wire Protocol, Server and Client

Handles TCP-based operation transfers between the two peers.
"""

from .protocol import (
    DEFAULT_PORT, CHUNK_SIZE, CONNECT_TIMEOUT,
    OpCode, AddOperation, DeleteOperation, Operation,
)
from .status import StatusKind, TransferStatus, StatusPublisher, StatusSubscription
from .server import TransferServer
from .client import TransferClient

__all__ = [
    'DEFAULT_PORT',
    'CHUNK_SIZE',
    'CONNECT_TIMEOUT',
    'OpCode',
    'AddOperation',
    'DeleteOperation',
    'Operation',
    'StatusKind',
    'TransferStatus',
    'StatusPublisher',
    'StatusSubscription',
    'TransferServer',
    'TransferClient',
]
