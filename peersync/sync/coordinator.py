"""
Sync Coordinator

Ties the synchronized folder's lifecycle to the peer connection:

- link established: create an empty folder, start the transfer server
- operation received: apply it to the folder, republish the listing
- local file offered: copy it in, push it to the peer with retries
- link terminated: stop the server, remove the folder

Design Decision: Retry Policy
=============================

Only outgoing sends are retried, and only here. Each attempt is a fresh
connection; between attempts the coordinator waits attempt * backoff
seconds (1s, then 2s by default). After the last attempt the last error
is raised to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

from ..config import Config
from ..errors import SyncError
from ..transfer import (
    Operation, StatusPublisher, TransferClient, TransferServer,
)
from .session import SyncSession, SyncedFileRecord

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Listing callback type
FilesCallback = Callable[[List[SyncedFileRecord]], None]


@dataclass
class SyncReport:
    """Outcome of pushing a batch of files."""
    synced: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # name -> error

    @property
    def has_errors(self) -> bool:
        return bool(self.failed)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'synced': list(self.synced),
            'skipped': list(self.skipped),
            'failed': dict(self.failed),
            'has_errors': self.has_errors,
        }


async def send_with_retry(send: Callable[[], Awaitable[T]], description: str,
                          max_attempts: int = 3, backoff: float = 1.0) -> T:
    """
    Run `send` until it succeeds or `max_attempts` attempts have failed.

    Waits attempt * backoff seconds between attempts.

    Raises:
        SyncError: the error of the last attempt
    """
    last_error: Optional[SyncError] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await send()
        except SyncError as e:
            last_error = e
            if attempt < max_attempts:
                delay = attempt * backoff
                logger.warning(f"Retry {attempt}: error during {description}: {e} "
                               f"(next attempt in {delay:.1f}s)")
                await asyncio.sleep(delay)

    logger.error(f"Giving up on {description} after {max_attempts} attempts")
    raise last_error


class SyncCoordinator:
    """
    Owns the sync session and drives the transfer server and client.

    Collaborator-facing:
    - on_connection_established(peer_address) / on_connection_terminated()
    - sync_file(file, peer_address)
    - `status` (StatusPublisher) and `files` / on_files_changed()
    """

    def __init__(self, config: Config = None,
                 publisher: Optional[StatusPublisher] = None):
        """
        Args:
            config: Engine configuration (uses defaults if not provided)
            publisher: Where transfer status goes (created if not provided)
        """
        self.config = config or Config()
        self.status = publisher or StatusPublisher()

        self.client = TransferClient(
            self.status,
            port=self.config.peer_port or self.config.transfer_port,
            chunk_size=self.config.chunk_size,
            connect_timeout=self.config.connect_timeout,
        )

        self.session: Optional[SyncSession] = None
        self.server: Optional[TransferServer] = None

        self._files: List[SyncedFileRecord] = []
        self._callbacks: List[FilesCallback] = []
        self._lifecycle_lock = asyncio.Lock()

    @property
    def folder(self) -> Path:
        """Where the synchronized folder lives while connected."""
        return Path(self.config.data_dir) / self.config.folder_name

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_connected

    @property
    def peer_address(self) -> Optional[str]:
        return self.session.peer_address if self.session else None

    @property
    def files(self) -> List[SyncedFileRecord]:
        """The most recently published listing."""
        return list(self._files)

    def on_files_changed(self, callback: FilesCallback):
        """Register a callback for listing updates."""
        self._callbacks.append(callback)

    def list_files(self) -> List[SyncedFileRecord]:
        """Fresh snapshot of the folder, read-only."""
        if self.session is None:
            return []
        return self.session.list_files()

    def _publish_files(self):
        self._files = self.list_files()
        for callback in self._callbacks:
            try:
                callback(list(self._files))
            except Exception as e:
                logger.error(f"Listing callback error: {e}")

    # === Connection lifecycle ===

    async def on_connection_established(self, peer_address: str) -> SyncSession:
        """
        Start a session with `peer_address`.

        Any previous session is torn down first, so at most one listener
        is ever active.

        Raises:
            FilesystemError: the folder could not be created
            NetworkError: the transfer port could not be bound
        """
        async with self._lifecycle_lock:
            if self.session is not None:
                logger.info(f"Replacing session with {self.session.peer_address}")
                await self._teardown()

            session = SyncSession(
                peer_address=peer_address,
                folder=self.folder,
                chunk_size=self.config.chunk_size,
            )
            await session.open()

            server = TransferServer(
                self.status,
                host=self.config.host,
                port=self.config.transfer_port,
                chunk_size=self.config.chunk_size,
                max_connections=self.config.max_connections,
            )
            try:
                await server.start(self._make_handler(session))
            except SyncError:
                await session.close()
                raise

            self.session = session
            self.server = server
            self._publish_files()

            logger.info(f"Connected to peer {peer_address}")
            return session

    async def on_connection_terminated(self):
        """End the current session, discarding the folder."""
        async with self._lifecycle_lock:
            if self.session is None:
                return
            await self._teardown()

    async def _teardown(self):
        peer = self.session.peer_address

        if self.server is not None:
            await self.server.stop()
        try:
            await self.session.close()
        finally:
            self.session = None
            self.server = None
            self._publish_files()
            self.status.reset()

        logger.info(f"Disconnected from peer {peer}")

    def _make_handler(self, session: SyncSession):
        """Operation handler bound to one session."""
        async def handle(operation: Operation):
            await session.apply(operation)
            if session is self.session:
                self._publish_files()
        return handle

    # === Outgoing sync ===

    async def _send(self, send: Callable[[], Awaitable[T]], description: str) -> T:
        return await send_with_retry(
            send,
            description,
            max_attempts=self.config.max_attempts,
            backoff=self.config.retry_backoff,
        )

    async def sync_file(self, local_file: Union[str, Path],
                        peer_address: Optional[str] = None,
                        skip_unchanged: bool = False) -> bool:
        """
        Copy a local file into the folder and push it to the peer.

        No-op if not connected.

        Args:
            local_file: File to sync
            peer_address: Where to send (defaults to the session's peer)
            skip_unchanged: Skip files whose synced copy is at least as new

        Returns:
            True if the file was sent, False if nothing was done

        Raises:
            SyncError: the copy failed, or every send attempt failed
        """
        session = self.session
        if session is None or not session.is_connected:
            logger.debug(f"Not connected, ignoring sync of {local_file}")
            return False

        peer = peer_address or session.peer_address
        target = await session.import_file(Path(local_file), skip_unchanged)
        if target is None:
            return False

        await self._send(
            lambda: self.client.send_file(target, peer),
            f"sync of {target.name}",
        )

        self._publish_files()
        return True

    async def sync_files(self, files: Iterable[Union[str, Path]],
                         peer_address: Optional[str] = None,
                         skip_unchanged: bool = False) -> SyncReport:
        """
        Push every file, carrying on past individual failures.

        Returns:
            SyncReport naming what was synced, skipped and failed
        """
        report = SyncReport()

        for local_file in files:
            name = Path(local_file).name
            try:
                if await self.sync_file(local_file, peer_address, skip_unchanged):
                    report.synced.append(name)
                else:
                    report.skipped.append(name)
            except SyncError as e:
                logger.error(f"Error syncing file {name}: {e}")
                report.failed[name] = str(e)

        if report.has_errors:
            logger.warning(f"Sync completed with errors: {len(report.failed)} failed")
        else:
            logger.info(f"Sync completed successfully: {len(report.synced)} sent")

        return report

    async def remove_file(self, name: str, peer_address: Optional[str] = None) -> bool:
        """
        Delete a file locally and tell the peer to delete it too.

        No-op if not connected.

        Returns:
            True if a DELETE was sent
        """
        session = self.session
        if session is None or not session.is_connected:
            logger.debug(f"Not connected, ignoring removal of {name}")
            return False

        peer = peer_address or session.peer_address
        await session.delete(name)
        self._publish_files()

        await self._send(
            lambda: self.client.send_delete(name, peer),
            f"delete of {name}",
        )
        return True

    def get_stats(self) -> dict:
        """Get coordinator statistics."""
        return {
            'connected': self.is_connected,
            'peer_address': self.peer_address,
            'folder': str(self.folder),
            'files': len(self._files),
            'server': self.server.get_stats() if self.server else None,
            'client': self.client.get_stats(),
        }
