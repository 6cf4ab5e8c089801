"""
Error Taxonomy

Every failure the sync engine reports is one of three kinds:

- NetworkError: connect timeout, refused/reset connection, bind failure
- ProtocolError: malformed opcode, truncated frame, invalid file name
- FilesystemError: copy, write, read or delete failure

Only SyncCoordinator retries, and only on sends.
"""


class SyncError(Exception):
    """Base class for sync engine errors."""


class NetworkError(SyncError):
    """Transport-level failure talking to the peer."""


class ProtocolError(SyncError):
    """A frame on the wire could not be parsed."""


class FilesystemError(SyncError):
    """Local file could not be read, written or removed."""
