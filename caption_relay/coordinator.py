"""
Reference session coordinator: the server side of the wire contract.

- REGISTER -> REGISTERED {clientId}
- CREATE_SESSION -> SESSION_CREATED (idempotent per sessionId)
- CAPTION_DATA -> buffered per session; flushed to disk at COORDINATOR_BUFFER_LIMIT
- END_SESSION -> final flush, SESSION_ENDED (ERROR if the session is unknown)
- PING -> PONG; unknown type / bad JSON -> ERROR, connection stays open

Event handlers (register_event_handler) fire on session:created, event:received
and session:ended (after the final flush); their errors are logged, never raised.

Storage: CAPTURE_STORAGE_DIR/sessions.json and <sessionId>-events.json (JSON only).
handle() is synchronous and returns the replies so it can be exercised without a socket.
"""
from __future__ import annotations

import json
import logging
import os
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from caption_relay.config import get_settings
from caption_relay.errors import MalformedMessageError
from caption_relay.schemas.captions import CamelModel, utc_now_iso
from caption_relay.schemas.local import require_exhaustive
from caption_relay.schemas.wire import (
    CaptionBatch,
    CreateSession,
    EndSession,
    ErrorMessage,
    OutboundMessage,
    Ping,
    Pong,
    Register,
    Registered,
    SessionCreated,
    SessionEnded,
    parse_outbound,
)

logger = logging.getLogger(__name__)

EVENT_TYPES = ("session:created", "session:ended", "event:received")

# (event_type, payload) -> None
EventHandler = Callable[[str, dict[str, Any]], None]


def _client_id() -> str:
    suffix = "".join(random.choices(string.digits + string.ascii_lowercase, k=9))
    return f"client-{int(time.time() * 1000)}-{suffix}"


@dataclass
class ClientInfo:
    id: str = field(default_factory=_client_id)
    connected_at: float = field(default_factory=time.time)
    active_sessions: set[str] = field(default_factory=set)
    client_type: str | None = None
    version: str | None = None


class StoredSession(CamelModel):
    id: str
    title: str = ""
    platform: str
    started_at: str
    ended_at: str | None = None
    status: str = "active"  # active | completed
    event_count: int = 0
    metadata: dict[str, Any] = {}


class CaptureCoordinator:
    def __init__(self, storage_dir: str | None = None, buffer_limit: int | None = None) -> None:
        settings = get_settings()
        self._storage_dir = storage_dir or settings.CAPTURE_STORAGE_DIR
        self._buffer_limit = buffer_limit if buffer_limit is not None else settings.COORDINATOR_BUFFER_LIMIT
        self._sessions_file = os.path.join(self._storage_dir, "sessions.json")
        self._sessions: dict[str, StoredSession] = {}
        self._buffers: dict[str, list[dict[str, Any]]] = {}
        self._clients: dict[str, ClientInfo] = {}
        self._event_handlers: dict[str, list[EventHandler]] = {}
        os.makedirs(self._storage_dir, exist_ok=True)
        self._load_sessions()
        logger.info("Coordinator initialized (storage=%s, sessions=%d)", self._storage_dir, len(self._sessions))

    # --- clients ---

    def connect_client(self) -> ClientInfo:
        client = ClientInfo()
        self._clients[client.id] = client
        logger.info("New client connected: %s", client.id)
        return client

    def disconnect_client(self, client: ClientInfo) -> None:
        self._clients.pop(client.id, None)
        logger.info("Client disconnected: %s", client.id)

    # --- event handlers ---

    def register_event_handler(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe handler to one of EVENT_TYPES (e.g. transcript materialization on session:ended)."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type {event_type!r}; expected one of {', '.join(EVENT_TYPES)}")
        self._event_handlers.setdefault(event_type, []).append(handler)

    def _trigger(self, event_type: str, payload: dict[str, Any]) -> None:
        for handler in list(self._event_handlers.get(event_type, [])):
            try:
                handler(event_type, payload)
            except Exception as e:
                logger.error("Error in %s handler: %s", event_type, e)

    # --- messages ---

    def handle(self, client: ClientInfo, raw: str | bytes) -> list[dict[str, Any]]:
        """Process one client frame; returns reply payloads in send order."""
        try:
            message = parse_outbound(raw)
        except MalformedMessageError as e:
            logger.warning("Rejected client message: %s", e)
            reason = "Invalid message format" if e.kind == "format" else "Unknown message type"
            return [ErrorMessage(error=reason).to_wire()]
        logger.debug("Client message: %s", message.type)
        return self._HANDLERS[type(message)](self, client, message)

    def _on_register(self, client: ClientInfo, message: Register) -> list[dict[str, Any]]:
        client.client_type = message.client_type
        client.version = message.version
        logger.info("Client registered: %s (%s %s)", client.id, message.client_type, message.version)
        return [Registered(client_id=client.id).to_wire()]

    def _on_create_session(self, client: ClientInfo, message: CreateSession) -> list[dict[str, Any]]:
        session = self._sessions.get(message.session_id)
        if session is None:
            session = StoredSession(
                id=message.session_id,
                title=message.title,
                platform=message.platform,
                started_at=utc_now_iso(),
                metadata={"tabId": message.tab_id},
            )
            self._sessions[session.id] = session
            self._buffers[session.id] = []
            logger.info("Session created: %s %s", session.id, session.title)
            self._save_sessions()
            self._trigger("session:created", session.to_wire())
        else:
            logger.info("Session %s already exists; CREATE_SESSION ignored", session.id)
        client.active_sessions.add(session.id)
        return [SessionCreated(session_id=session.id, session=session.to_wire()).to_wire()]

    def _on_caption_data(self, client: ClientInfo, message: CaptionBatch) -> list[dict[str, Any]]:
        session = self._sessions.get(message.session_id)
        if session is None:
            logger.warning("Unknown session: %s", message.session_id)
            return []
        events = [
            {
                "timestamp": caption.timestamp,
                "sessionId": message.session_id,
                "platform": message.platform,
                "data": caption.to_wire(),
                "metadata": {"receivedAt": message.timestamp},
            }
            for caption in message.captions
        ]
        buffer = self._buffers.setdefault(message.session_id, [])
        buffer.extend(events)
        session.event_count += len(events)
        logger.info("Received events: %d for session %s", len(events), message.session_id)
        for event in events:
            self._trigger("event:received", event)
        if len(buffer) >= self._buffer_limit:
            self.flush_session(message.session_id)
        return []

    def _on_end_session(self, client: ClientInfo, message: EndSession) -> list[dict[str, Any]]:
        session = self._sessions.get(message.session_id)
        if session is None:
            return [ErrorMessage(error="Session not found").to_wire()]
        session.status = "completed"
        session.ended_at = utc_now_iso()
        client.active_sessions.discard(session.id)
        logger.info("Session ended: %s", session.id)
        self.flush_session(session.id)
        self._save_sessions()
        self._trigger("session:ended", session.to_wire())
        return [SessionEnded(session_id=session.id).to_wire()]

    def _on_ping(self, client: ClientInfo, message: Ping) -> list[dict[str, Any]]:
        return [Pong().to_wire()]

    _HANDLERS: dict[type, Callable[..., list[dict[str, Any]]]] = {
        Register: _on_register,
        CreateSession: _on_create_session,
        CaptionBatch: _on_caption_data,
        EndSession: _on_end_session,
        Ping: _on_ping,
    }

    # --- queries ---

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        session = self._sessions.get(session_id)
        return session.to_wire() if session is not None else None

    def all_sessions(self) -> list[dict[str, Any]]:
        return [s.to_wire() for s in self._sessions.values()]

    def buffered(self, session_id: str) -> int:
        return len(self._buffers.get(session_id, []))

    def session_events(self, session_id: str) -> list[dict[str, Any]]:
        path = self._events_file(session_id)
        if not os.path.exists(path):
            return []
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to read events for %s: %s", session_id, e)
            return []

    # --- persistence ---

    def _events_file(self, session_id: str) -> str:
        return os.path.join(self._storage_dir, f"{session_id}-events.json")

    def flush_session(self, session_id: str) -> int:
        """Append buffered events to the session's events file. Returns the number written."""
        buffer = self._buffers.get(session_id)
        if not buffer:
            return 0
        path = self._events_file(session_id)
        try:
            existing = self.session_events(session_id)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(existing + buffer, f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.error("Failed to flush buffer for %s: %s", session_id, e)
            return 0
        written = len(buffer)
        self._buffers[session_id] = []
        logger.info("Flushed buffer: %d events for session %s", written, session_id)
        return written

    def flush_active(self) -> int:
        """Periodic flush: every active session with buffered events. Call from the event loop only."""
        active = [sid for sid, s in self._sessions.items() if s.status == "active"]
        return sum(self.flush_session(sid) for sid in active)

    def _load_sessions(self) -> None:
        if not os.path.exists(self._sessions_file):
            return
        try:
            with open(self._sessions_file, encoding="utf-8") as f:
                data = json.load(f)
            for item in data:
                session = StoredSession.model_validate(item)
                self._sessions[session.id] = session
        except (OSError, ValueError) as e:
            logger.error("Failed to load sessions: %s", e)

    def _save_sessions(self) -> None:
        try:
            with open(self._sessions_file, "w", encoding="utf-8") as f:
                json.dump(self.all_sessions(), f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.error("Failed to save sessions: %s", e)


require_exhaustive(CaptureCoordinator._HANDLERS, OutboundMessage, "CaptureCoordinator")
