"""
Transfer Client

Pushes a single operation to the peer's TransferServer per connection.

The client never retries: a failed attempt publishes Error and raises,
and SyncCoordinator decides whether to try again.
"""

import asyncio
import logging
from pathlib import Path
from typing import Tuple, Union

import aiofiles
import aiofiles.os

from .protocol import (
    DEFAULT_PORT, CHUNK_SIZE, CONNECT_TIMEOUT, check_file_name,
    encode_add_header, encode_delete, progress_percent,
)
from .status import StatusPublisher, TransferStatus
from ..errors import SyncError, NetworkError, FilesystemError

logger = logging.getLogger(__name__)


class TransferClient:
    """
    Sends ADD and DELETE frames to a peer.

    Each call opens its own connection, bounded by a connect timeout,
    and closes it when the frame has been written.
    """

    def __init__(self, publisher: StatusPublisher, port: int = DEFAULT_PORT,
                 chunk_size: int = CHUNK_SIZE,
                 connect_timeout: float = CONNECT_TIMEOUT):
        self.publisher = publisher
        self.port = port
        self.chunk_size = chunk_size
        self.connect_timeout = connect_timeout

        # Statistics
        self.files_sent = 0
        self.deletes_sent = 0
        self.bytes_sent = 0

    async def _connect(self, peer_address: str) -> Tuple[asyncio.StreamReader,
                                                         asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(peer_address, self.port),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Timed out connecting to {peer_address}:{self.port}"
            ) from e
        except OSError as e:
            raise NetworkError(
                f"Failed to connect to {peer_address}:{self.port}: {e}"
            ) from e

    async def _write(self, writer: asyncio.StreamWriter, data: bytes):
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            raise NetworkError(f"Connection lost while sending: {e}") from e

    async def _close(self, writer: asyncio.StreamWriter):
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing connection: {e}")

    async def send_file(self, file_path: Union[str, Path], peer_address: str) -> str:
        """
        Send a file as an ADD operation.

        Args:
            file_path: Local file to send; its base name is the remote name
            peer_address: Host or IP of the peer

        Returns:
            The transfer_id the published statuses carry

        Raises:
            NetworkError: connect timeout, refused or reset connection
            FilesystemError: the local file could not be read
        """
        file_path = Path(file_path)
        name = file_path.name
        transfer_id = StatusPublisher.new_transfer_id()

        try:
            check_file_name(name)

            try:
                length = (await aiofiles.os.stat(file_path)).st_size
            except OSError as e:
                raise FilesystemError(f"Cannot read {file_path}: {e}") from e

            _, writer = await self._connect(peer_address)
            try:
                await self._write(writer, encode_add_header(name, length))
                await self._stream_file(writer, file_path, name, length, transfer_id)
            finally:
                await self._close(writer)

        except SyncError as e:
            logger.error(f"Error sending file {name} to {peer_address}: {e}")
            self.publisher.publish(TransferStatus.error(
                transfer_id, f"Failed to send file: {e}", name
            ))
            raise

        self.files_sent += 1
        self.publisher.publish(TransferStatus.success(transfer_id, name))
        logger.info(f"Sent {name} ({length:,} bytes) to {peer_address}")
        return transfer_id

    async def _stream_file(self, writer: asyncio.StreamWriter, file_path: Path,
                           name: str, length: int, transfer_id: str):
        """Write exactly `length` bytes of the file, publishing progress."""
        sent = 0

        try:
            f = await aiofiles.open(file_path, 'rb')
        except OSError as e:
            raise FilesystemError(f"Cannot open {file_path}: {e}") from e

        async with f:
            while sent < length:
                try:
                    data = await f.read(min(self.chunk_size, length - sent))
                except OSError as e:
                    raise FilesystemError(f"Error reading {file_path}: {e}") from e
                if not data:
                    raise FilesystemError(
                        f"{file_path} shrank while sending: {sent}/{length} bytes"
                    )

                await self._write(writer, data)
                sent += len(data)
                self.bytes_sent += len(data)

                self.publisher.publish(TransferStatus.sending(
                    transfer_id, name, progress_percent(sent, length)
                ))

        if length == 0:
            self.publisher.publish(TransferStatus.sending(transfer_id, name, 100))

    async def send_delete(self, name: str, peer_address: str) -> str:
        """
        Send a DELETE operation for `name`.

        Returns:
            The transfer_id the published statuses carry

        Raises:
            NetworkError: connect timeout, refused or reset connection
        """
        transfer_id = StatusPublisher.new_transfer_id()

        try:
            check_file_name(name)
            _, writer = await self._connect(peer_address)
            try:
                await self._write(writer, encode_delete(name))
            finally:
                await self._close(writer)

        except SyncError as e:
            logger.error(f"Error sending delete of {name} to {peer_address}: {e}")
            self.publisher.publish(TransferStatus.error(
                transfer_id, f"Failed to send delete operation: {e}", name
            ))
            raise

        self.deletes_sent += 1
        self.publisher.publish(TransferStatus.success(transfer_id, name))
        logger.info(f"Sent delete of {name} to {peer_address}")
        return transfer_id

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            'files_sent': self.files_sent,
            'deletes_sent': self.deletes_sent,
            'bytes_sent': self.bytes_sent,
            'port': self.port,
        }
