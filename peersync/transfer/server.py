"""
Transfer Server

Accepts inbound connections from the peer, reads exactly one frame per
connection and hands the resulting Operation to the sync layer.

Design Decision: Connection Handling
====================================

Options Considered:
1. Thread per connection
   - Simple blocking I/O
   - Unbounded under a misbehaving peer

2. asyncio server, task per connection, with a connection cap
   - Accept loop never waits on a client's I/O
   - Bounded resource use

Decision: asyncio.start_server with a connection cap
- Connections over the cap are closed immediately
- One connection's failure is reported and never reaches the accept loop
- No acknowledgment is ever written back to the sender
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles
import aiofiles.os

from .protocol import (
    DEFAULT_PORT, CHUNK_SIZE, OpCode, Operation, AddOperation,
    DeleteOperation, FrameHeader, read_frame_header, progress_percent,
)
from .status import StatusPublisher, TransferStatus
from ..errors import NetworkError, ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS = 16

# Receives each fully-read operation
OperationHandler = Callable[[Operation], Awaitable[None]]


class TransferServer:
    """
    TCP server for inbound sync operations.

    Publishes Receiving progress while a payload streams in, then
    Success once the operation handler has applied it, or Error if
    anything goes wrong on that connection.
    """

    def __init__(self, publisher: StatusPublisher, host: str = '0.0.0.0',
                 port: int = DEFAULT_PORT, chunk_size: int = CHUNK_SIZE,
                 max_connections: int = DEFAULT_MAX_CONNECTIONS,
                 temp_dir: Optional[Path] = None):
        self.publisher = publisher
        self.host = host
        self.port = port
        self.chunk_size = chunk_size
        self.max_connections = max_connections
        self.temp_dir = temp_dir

        self.server: Optional[asyncio.AbstractServer] = None
        self._on_operation: Optional[OperationHandler] = None
        self._active_connections = 0

        # Statistics
        self.operations_received = 0
        self.bytes_received = 0
        self.connections_rejected = 0

    @property
    def is_running(self) -> bool:
        return self.server is not None

    @property
    def bound_port(self) -> Optional[int]:
        """The port actually listened on (differs from `port` when it is 0)."""
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    @property
    def active_connections(self) -> int:
        return self._active_connections

    async def start(self, on_operation: OperationHandler):
        """
        Start listening.

        Args:
            on_operation: Coroutine function applying each received operation

        Raises:
            NetworkError: if the port cannot be bound
        """
        if self.server is not None:
            logger.warning("Transfer server already running")
            return

        self._on_operation = on_operation

        try:
            self.server = await asyncio.start_server(
                self._handle_connection,
                self.host,
                self.port
            )
        except OSError as e:
            raise NetworkError(
                f"Failed to start server on {self.host}:{self.port}: {e}"
            ) from e

        addr = self.server.sockets[0].getsockname()
        logger.info(f"Transfer server listening on {addr}")

    async def stop(self):
        """Stop accepting. Connections already being handled run to completion."""
        if self.server is None:
            return

        # wait_closed() would also wait for in-flight connections
        self.server.close()
        self.server = None
        logger.info("Transfer server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle one inbound connection carrying one frame."""
        peer = writer.get_extra_info('peername')

        if self._active_connections >= self.max_connections:
            self.connections_rejected += 1
            logger.warning(f"Rejecting connection from {peer}: "
                           f"{self._active_connections} connections active")
            writer.close()
            return

        self._active_connections += 1
        transfer_id = StatusPublisher.new_transfer_id()
        temp_path: Optional[Path] = None
        name: Optional[str] = None
        logger.debug(f"New transfer connection from {peer}")

        try:
            header = await read_frame_header(reader)
            name = header.name

            if header.opcode is OpCode.ADD:
                temp_path = self._create_temp_file()
                await self._receive_payload(reader, header, temp_path, transfer_id)
                operation = AddOperation(name=name, content_path=temp_path,
                                         length=header.length)
            else:
                operation = DeleteOperation(name=name)

            await self._on_operation(operation)

            self.operations_received += 1
            self.publisher.publish(TransferStatus.success(transfer_id, name))
            logger.info(f"Applied {header.opcode.value} {name} from {peer}")

        except Exception as e:
            logger.error(f"Error handling connection from {peer}: {e}")
            self.publisher.publish(TransferStatus.error(
                transfer_id, f"Failed to handle client: {e}", name
            ))
        finally:
            self._active_connections -= 1
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing connection from {peer}: {e}")
            if temp_path is not None:
                await self._discard_temp_file(temp_path)
            logger.debug(f"Connection closed: {peer}")

    async def _discard_temp_file(self, temp_path: Path):
        try:
            if await aiofiles.os.path.exists(temp_path):
                await aiofiles.os.remove(temp_path)
        except OSError as e:
            logger.warning(f"Could not remove temp file {temp_path}: {e}")

    def _create_temp_file(self) -> Path:
        fd, temp_name = tempfile.mkstemp(prefix='receiving_', suffix='.part',
                                         dir=self.temp_dir)
        os.close(fd)
        return Path(temp_name)

    async def _receive_payload(self, reader: asyncio.StreamReader,
                               header: FrameHeader, temp_path: Path,
                               transfer_id: str):
        """
        Stream exactly header.length bytes into temp_path.

        Raises:
            ProtocolError: if the stream ends before the declared length
        """
        length = header.length
        received = 0

        async with aiofiles.open(temp_path, 'wb') as f:
            while received < length:
                data = await reader.read(min(self.chunk_size, length - received))
                if not data:
                    raise ProtocolError(
                        f"Connection closed after {received}/{length} bytes"
                    )

                await f.write(data)
                received += len(data)
                self.bytes_received += len(data)

                self.publisher.publish(TransferStatus.receiving(
                    transfer_id, header.name, progress_percent(received, length)
                ))

        if length == 0:
            self.publisher.publish(TransferStatus.receiving(transfer_id, header.name, 100))

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'running': self.is_running,
            'port': self.bound_port or self.port,
            'active_connections': self._active_connections,
            'operations_received': self.operations_received,
            'bytes_received': self.bytes_received,
            'connections_rejected': self.connections_rejected,
        }
