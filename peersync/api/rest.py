"""
REST API for the Sync Engine

Design Decision: API Framework
==============================

Decision: FastAPI
- Native async support (the engine is asyncio throughout)
- Automatic OpenAPI documentation
- Pydantic integration for validation

The API is the collaborator boundary: link-layer events come in as
session calls, and status/listing go out as JSON and as a
Server-Sent Events stream.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, List, Dict
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..errors import SyncError, ProtocolError

logger = logging.getLogger(__name__)

# Global reference to the coordinator (set when app is created)
_coordinator = None


# === Pydantic Models ===

class SessionRequest(BaseModel):
    """Link-layer event: connection established."""
    peer_address: str


class SyncRequest(BaseModel):
    """Request to sync a local file."""
    file_path: str
    skip_unchanged: bool = False


class SessionInfo(BaseModel):
    """Current session state."""
    connected: bool
    peer_address: Optional[str] = None
    folder: str


class StatusInfo(BaseModel):
    """A transfer status."""
    kind: str
    name: Optional[str] = None
    progress: Optional[int] = None
    message: Optional[str] = None
    transfer_id: Optional[str] = None
    timestamp: float


class SyncedFileInfo(BaseModel):
    """A file in the synchronized folder."""
    name: str
    size: int
    last_modified: int
    path: str


async def status_events(publisher, limit: Optional[int] = None,
                        heartbeat: float = 15.0):
    """
    SSE lines for the current status and then every new one.

    Args:
        publisher: StatusPublisher to follow
        limit: Stop after this many events (None = forever)
        heartbeat: Seconds of silence before a keep-alive comment
    """
    sent = 0
    async with publisher.subscribe() as subscription:
        status = publisher.current
        while True:
            yield f"data: {json.dumps(status.to_dict())}\n\n"
            sent += 1
            if limit is not None and sent >= limit:
                return
            while True:
                try:
                    status = await asyncio.wait_for(subscription.get(), timeout=heartbeat)
                    break
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"


# === API Creation ===

def create_app(coordinator=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        coordinator: SyncCoordinator instance to control

    Returns:
        FastAPI application
    """
    global _coordinator
    _coordinator = coordinator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        yield
        if _coordinator is not None:
            await _coordinator.on_connection_terminated()
        logger.info("API server stopping...")

    app = FastAPI(
        title="PeerSync API",
        description="REST API for the two-peer folder sync engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    def require_coordinator():
        if not _coordinator:
            raise HTTPException(status_code=503, detail="Coordinator not initialized")
        return _coordinator

    def session_info(c) -> SessionInfo:
        return SessionInfo(
            connected=c.is_connected,
            peer_address=c.peer_address,
            folder=str(c.folder),
        )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "PeerSync",
            "version": "1.0.0",
            "status": "connected" if _coordinator and _coordinator.is_connected else "idle"
        }

    @app.get("/stats", tags=["General"])
    async def get_stats():
        """Get detailed engine statistics."""
        return require_coordinator().get_stats()

    # === Session ===

    @app.get("/session", response_model=SessionInfo, tags=["Session"])
    async def get_session():
        """Get the current session."""
        return session_info(require_coordinator())

    @app.post("/session", response_model=SessionInfo, tags=["Session"])
    async def establish_session(request: SessionRequest):
        """Signal that the peer link is up."""
        c = require_coordinator()
        try:
            await c.on_connection_established(request.peer_address)
        except SyncError as e:
            logger.error(f"Error establishing session: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail=str(e))
        return session_info(c)

    @app.delete("/session", response_model=SessionInfo, tags=["Session"])
    async def terminate_session():
        """Signal that the peer link is down."""
        c = require_coordinator()
        await c.on_connection_terminated()
        return session_info(c)

    # === Status ===

    @app.get("/status", response_model=StatusInfo, tags=["Status"])
    async def get_status():
        """The most recent transfer status."""
        return StatusInfo(**require_coordinator().status.current.to_dict())

    @app.get("/transfers", response_model=Dict[str, StatusInfo], tags=["Status"])
    async def list_transfers():
        """Latest status of each recent transfer."""
        transfers = require_coordinator().status.transfers()
        return {tid: StatusInfo(**s.to_dict()) for tid, s in transfers.items()}

    @app.get("/transfers/{transfer_id}", response_model=StatusInfo, tags=["Status"])
    async def get_transfer(transfer_id: str):
        """Latest status of one transfer."""
        status = require_coordinator().status.get(transfer_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Unknown transfer: {transfer_id}")
        return StatusInfo(**status.to_dict())

    @app.get("/events", tags=["Status"])
    async def stream_events(limit: Optional[int] = Query(None, ge=1)):
        """
        Stream transfer status as Server-Sent Events.

        Every event is delivered in order, including intermediate
        progress of concurrent transfers. With `limit`, the stream ends
        after that many events.
        """
        c = require_coordinator()

        return StreamingResponse(
            status_events(c.status, limit=limit),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )

    # === Files ===

    @app.get("/files", response_model=List[SyncedFileInfo], tags=["Files"])
    async def list_files():
        """List the synchronized folder."""
        return [
            SyncedFileInfo(**record.to_dict())
            for record in require_coordinator().list_files()
        ]

    @app.post("/files/sync", tags=["Files"])
    async def sync_file(request: SyncRequest):
        """Copy a local file into the folder and push it to the peer."""
        c = require_coordinator()
        if not c.is_connected:
            raise HTTPException(status_code=409, detail="Not connected to a peer")

        file_path = Path(request.file_path)

        # Handle relative paths - resolve to absolute
        if not file_path.is_absolute():
            file_path = file_path.resolve()

        if not file_path.exists():
            raise HTTPException(status_code=404, detail=f"File not found: {file_path}")

        if not file_path.is_file():
            raise HTTPException(status_code=400, detail=f"Not a file: {file_path}")

        try:
            sent = await c.sync_file(file_path, skip_unchanged=request.skip_unchanged)
        except SyncError as e:
            logger.error(f"Error syncing file: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail=str(e))

        return {"success": True, "sent": sent, "name": file_path.name}

    @app.delete("/files/{name}", tags=["Files"])
    async def remove_file(name: str):
        """Delete a file here and on the peer."""
        c = require_coordinator()
        if not c.is_connected:
            raise HTTPException(status_code=409, detail="Not connected to a peer")

        try:
            await c.remove_file(name)
        except ProtocolError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SyncError as e:
            logger.error(f"Error removing file: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail=str(e))

        return {"success": True, "name": name}

    return app


async def run_api_server(coordinator, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the API server.

    Args:
        coordinator: SyncCoordinator instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(coordinator)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
