"""
Sync Session

Design Decision: Session Scope
==============================

Options Considered:
1. One folder owned by a long-lived manager
   - Folder outlives the connection, stale files survive reconnects
   - Hard to test several sessions side by side

2. Explicit session value per connection
   - Folder created empty when the link comes up, removed when it goes
   - Any number of sessions can coexist in a test

Decision: SyncSession value owned by SyncCoordinator
- All folder writers go through the session lock
- Listings are always recomputed from the filesystem

Folder Layout:
```
data/
└── synced_files/     # exists only while connected, flat
    ├── note.txt
    └── photo.jpg
```
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os

from ..errors import FilesystemError, ProtocolError
from ..transfer.protocol import (
    CHUNK_SIZE, AddOperation, DeleteOperation, Operation, check_file_name,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncedFileRecord:
    """One file in the synchronized folder."""
    name: str
    size: int
    last_modified: int  # epoch milliseconds
    path: str

    @classmethod
    def from_path(cls, path: Path) -> 'SyncedFileRecord':
        stat = path.stat()
        return cls(
            name=path.name,
            size=stat.st_size,
            last_modified=int(stat.st_mtime * 1000),
            path=str(path.resolve()),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'name': self.name,
            'size': self.size,
            'last_modified': self.last_modified,
            'path': self.path,
        }


async def copy_file(source: Path, target: Path, chunk_size: int = CHUNK_SIZE):
    """Copy file content, overwriting the target."""
    async with aiofiles.open(source, 'rb') as src:
        async with aiofiles.open(target, 'wb') as dst:
            while True:
                data = await src.read(chunk_size)
                if not data:
                    break
                await dst.write(data)


@dataclass
class SyncSession:
    """
    The synchronized folder for one peer connection.

    Created by SyncCoordinator when the link comes up and closed when
    it goes down.
    """
    peer_address: str
    folder: Path
    chunk_size: int = CHUNK_SIZE
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _open: bool = field(default=False, repr=False)

    @property
    def is_connected(self) -> bool:
        return self._open

    async def open(self):
        """Create the folder, emptying anything left from before."""
        async with self.lock:
            try:
                if await aiofiles.os.path.exists(self.folder):
                    await asyncio.to_thread(shutil.rmtree, self.folder)
                    logger.info(f"Cleared stale sync folder {self.folder}")
                await aiofiles.os.makedirs(self.folder)
            except OSError as e:
                raise FilesystemError(f"Cannot create sync folder {self.folder}: {e}") from e

            self._open = True
            logger.info(f"Sync session with {self.peer_address} opened at {self.folder}")

    async def close(self):
        """Remove the folder and everything in it."""
        async with self.lock:
            self._open = False
            try:
                if await aiofiles.os.path.exists(self.folder):
                    await asyncio.to_thread(shutil.rmtree, self.folder)
            except OSError as e:
                raise FilesystemError(f"Cannot remove sync folder {self.folder}: {e}") from e

            logger.info(f"Sync session with {self.peer_address} closed")

    def path_for(self, name: str) -> Path:
        """Path of `name` inside the folder."""
        return self.folder / check_file_name(name)

    def _ensure_open(self):
        # Sessions share one folder path; a closed session must not write
        # into its successor's folder. Call with the lock held.
        if not self._open:
            raise FilesystemError(f"Sync session with {self.peer_address} is closed")

    # === Applying operations ===

    async def apply(self, operation: Operation):
        """Apply a received operation to the folder."""
        if isinstance(operation, AddOperation):
            await self.apply_add(operation)
        elif isinstance(operation, DeleteOperation):
            await self.delete(operation.name)
        else:
            raise TypeError(f"Unknown operation: {operation!r}")

    async def apply_add(self, operation: AddOperation):
        """Move the received content into place, overwriting."""
        target = self.path_for(operation.name)

        async with self.lock:
            self._ensure_open()
            try:
                try:
                    await aiofiles.os.replace(operation.content_path, target)
                except OSError:
                    # temp dir on another filesystem
                    await copy_file(operation.content_path, target, self.chunk_size)
            except OSError as e:
                raise FilesystemError(f"Cannot store {operation.name}: {e}") from e

        logger.debug(f"Stored {operation.name} ({operation.length:,} bytes)")

    async def delete(self, name: str) -> bool:
        """
        Delete a file from the folder.

        Returns:
            True if a file was removed, False if it was absent
        """
        target = self.path_for(name)

        async with self.lock:
            self._ensure_open()
            if not await aiofiles.os.path.exists(target):
                logger.debug(f"Delete of absent file {name} ignored")
                return False
            try:
                await aiofiles.os.remove(target)
            except OSError as e:
                raise FilesystemError(f"Cannot delete {name}: {e}") from e

        logger.debug(f"Deleted {name}")
        return True

    async def import_file(self, source: Path,
                          skip_unchanged: bool = False) -> Optional[Path]:
        """
        Copy a local file into the folder, overwriting.

        Args:
            source: File to copy
            skip_unchanged: Leave the folder alone if its copy is at
                least as new as the source

        Returns:
            Path of the copy, or None if skipped
        """
        source = Path(source)
        try:
            target = self.path_for(source.name)
        except ProtocolError as e:
            raise FilesystemError(str(e)) from e

        async with self.lock:
            self._ensure_open()
            try:
                if not await aiofiles.os.path.isfile(source):
                    raise FilesystemError(f"Not a file: {source}")

                if await aiofiles.os.path.exists(target):
                    if target.resolve() == source.resolve():
                        return target
                    if skip_unchanged and target.stat().st_mtime >= source.stat().st_mtime:
                        logger.debug(f"Skipping {source.name}: synced copy is newer or same age")
                        return None

                await copy_file(source, target, self.chunk_size)
            except OSError as e:
                raise FilesystemError(f"Cannot copy {source} into sync folder: {e}") from e

        return target

    # === Listing ===

    def list_files(self) -> List[SyncedFileRecord]:
        """Snapshot of the folder's current contents, ordered by name."""
        if not self.folder.is_dir():
            return []

        records = []
        for path in sorted(self.folder.iterdir(), key=lambda p: p.name):
            try:
                if path.is_file():
                    records.append(SyncedFileRecord.from_path(path))
            except OSError:
                # removed between iterdir() and stat()
                continue
        return records
