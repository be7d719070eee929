"""
FastAPI app: reference session coordinator for the caption transport agent.

WebSocket /realtime-capture speaks the JSON wire protocol (see caption_relay.schemas.wire).
HTTP: /health, /api/sessions, /api/sessions/{session_id}/events.

Run: caption-relay-coordinator (or python -m caption_relay.main)
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from caption_relay.config import get_settings
from caption_relay.coordinator import CaptureCoordinator
from caption_relay.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def _periodic_flush(coordinator: CaptureCoordinator, interval: float) -> None:
    """Persist buffered events of active sessions every interval seconds.

    Runs on the event loop; coordinator state is only touched from the loop.
    """
    while True:
        await asyncio.sleep(interval)
        written = coordinator.flush_active()
        if written:
            logger.debug("Periodic flush wrote %d events", written)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    coordinator = CaptureCoordinator()
    app.state.coordinator = coordinator
    flush_task = asyncio.create_task(_periodic_flush(coordinator, settings.COORDINATOR_FLUSH_SECONDS))
    logger.info("Periodic flush started: every %.1fs", settings.COORDINATOR_FLUSH_SECONDS)
    yield
    flush_task.cancel()
    try:
        await flush_task
    except asyncio.CancelledError:
        pass
    coordinator.flush_active()
    app.state.coordinator = None


app = FastAPI(
    title="Caption Relay Coordinator",
    description="Session coordinator for real-time meeting caption capture",
    lifespan=lifespan,
)


def _coordinator(app: FastAPI) -> CaptureCoordinator:
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        raise RuntimeError("App not initialized (lifespan not run?)")
    return coordinator


@app.websocket("/realtime-capture")
async def realtime_capture(websocket: WebSocket) -> None:
    """One connection = one client. Each text frame may produce zero or more JSON replies."""
    await websocket.accept()
    coordinator = _coordinator(websocket.app)
    client = coordinator.connect_client()
    try:
        while True:
            raw = await websocket.receive_text()
            for reply in coordinator.handle(client, raw):
                await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        pass
    finally:
        coordinator.disconnect_client(client)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/sessions")
async def list_sessions() -> dict:
    return {"sessions": _coordinator(app).all_sessions()}


@app.get("/api/sessions/{session_id}/events")
async def session_events(session_id: str) -> dict:
    coordinator = _coordinator(app)
    session = coordinator.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session": session, "events": coordinator.session_events(session_id)}


def run(host: str | None = None, port: int | None = None) -> None:
    """Serve the coordinator with uvicorn (COORDINATOR_HOST / COORDINATOR_PORT by default)."""
    settings = get_settings()
    uvicorn.run(
        app,
        host=host or settings.COORDINATOR_HOST,
        port=port if port is not None else settings.COORDINATOR_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
