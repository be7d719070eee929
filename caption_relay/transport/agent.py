"""
TransportAgent: owns the persistent connection to the session coordinator,
the local session registry, and routing between extractors, UI and coordinator.

Connection phases:
  DISCONNECTED -> CONNECTING -> CONNECTED
  open failure / unexpected close -> RECONNECTING -> (after interval) CONNECTING
  max_attempts consecutive failed retries -> EXHAUSTED (terminal until restart())
A successful connect resets reconnect_attempts to 0.

Sends are fire-and-forget: send() enqueues the frame for the writer task and
returns True, or returns False when not connected. Frames sent while
disconnected are dropped, not queued for replay; callers must not assume
delivery.

Everything runs on one event loop; no locks. Build one agent per process (or
per test); there is no module-level instance.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from caption_relay.config import Settings, get_settings
from caption_relay.errors import MalformedMessageError, ReconnectExhaustedError
from caption_relay.schemas.captions import CaptionEvent, Session, SessionState, generate_session_id
from caption_relay.schemas.local import (
    CaptionData,
    CaptureStarted,
    CaptureStopped,
    ExtractorEvent,
    MeetingDetected,
    StartCapture,
    StopCapture,
    UiNotification,
    parse_local,
    require_exhaustive,
)
from caption_relay.schemas.wire import (
    CaptionBatch,
    CaptureStatus,
    CreateSession,
    EndSession,
    ErrorMessage,
    InboundMessage,
    Ping,
    Pong,
    Register,
    Registered,
    SessionCreated,
    SessionEnded,
    encode,
    parse_inbound,
)
from caption_relay.transport.client import AiohttpConnector, Connector, WireSocket
from caption_relay.transport.connection import ConnectionPhase, ConnectionState, ReconnectPolicy
from caption_relay.transport.host import TabHost
from caption_relay.transport.registry import SessionRegistry

logger = logging.getLogger(__name__)

Observer = Callable[[UiNotification], None]


class TransportAgent:
    def __init__(
        self,
        host: TabHost | None = None,
        connector: Connector | None = None,
        settings: Settings | None = None,
        url: str | None = None,
        policy: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._url = url or self._settings.COORDINATOR_URL
        self._connector = connector or AiohttpConnector()
        self._policy = policy or ReconnectPolicy(
            interval=self._settings.RECONNECT_INTERVAL_SECONDS,
            max_attempts=self._settings.MAX_RECONNECT_ATTEMPTS,
        )
        self._sleep = sleep
        self._host = host
        if host is not None:
            host.bind(self.handle_local)

        self._state = ConnectionState()
        self._registry = SessionRegistry()
        self._observers: list[Observer] = []
        self._meetings: dict[Any, dict[str, Any]] = {}
        self._client_id: str | None = None

        self._socket: WireSocket | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._stopping = False

    # --- read-only views ---

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(phase=self._state.phase, reconnect_attempts=self._state.reconnect_attempts)

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def client_id(self) -> str | None:
        return self._client_id

    def get_sessions(self) -> dict[str, Any]:
        return self._registry.snapshot()

    def get_connection_status(self) -> dict[str, Any]:
        status = self._state.to_dict()
        status["clientId"] = self._client_id
        return status

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # --- lifecycle ---

    async def start(self) -> None:
        self._stopping = False
        await self.connect()

    async def stop(self) -> None:
        """Close the connection and cancel background tasks. No reconnect afterwards."""
        self._stopping = True
        for task in (self._reconnect_task, self._keepalive_task, self._reader_task, self._writer_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        socket, self._socket = self._socket, None
        was_connected = self._state.is_connected
        self._state.phase = ConnectionPhase.DISCONNECTED
        if socket is not None:
            try:
                await socket.close()
            except Exception as e:
                logger.debug("Error closing socket: %s", e)
        if was_connected:
            self._notify("CONNECTION_STATUS", isConnected=False)
        logger.info("Transport agent stopped")

    async def restart(self) -> None:
        """External trigger after EXHAUSTED (or any time): reset attempts and connect again."""
        await self.stop()
        self._stopping = False
        self._state.reconnect_attempts = 0
        await self.connect()

    # --- connection ---

    async def connect(self) -> bool:
        if self._state.is_connected:
            logger.info("Already connected")
            return True
        if self._state.phase == ConnectionPhase.CONNECTING:
            return False
        self._cancel_pending_reconnect()
        self._state.phase = ConnectionPhase.CONNECTING
        logger.info("Connecting to coordinator: %s", self._url)
        try:
            socket = await self._connector.connect(self._url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Connection to %s failed: %s", self._url, e)
            self._on_connection_lost()
            return False
        if self._stopping:
            await socket.close()
            self._state.phase = ConnectionPhase.DISCONNECTED
            return False

        self._socket = socket
        self._state.phase = ConnectionPhase.CONNECTED
        self._state.reconnect_attempts = 0
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(socket, self._outbox))
        self._reader_task = asyncio.create_task(self._read_loop(socket))
        if self._settings.KEEPALIVE_SECONDS > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(socket))
        logger.info("Connected to coordinator")

        self.send(Register(client_type=self._settings.CLIENT_TYPE, version=self._settings.CLIENT_VERSION))
        self._notify("CONNECTION_STATUS", isConnected=True)
        return True

    def _on_connection_lost(self) -> None:
        was_connected = self._state.is_connected
        self._socket = None
        self._outbox = None
        for task in (self._writer_task, self._keepalive_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._state.phase = ConnectionPhase.DISCONNECTED
        if was_connected:
            logger.info("Disconnected from coordinator")
            self._notify("CONNECTION_STATUS", isConnected=False)
        if self._stopping:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._cancel_pending_reconnect()
        if self._policy.exhausted(self._state.reconnect_attempts):
            self._state.phase = ConnectionPhase.EXHAUSTED
            err = ReconnectExhaustedError(
                f"Max reconnection attempts reached ({self._policy.max_attempts}); restart required"
            )
            logger.error("%s", err)
            self._notify("ERROR", error=str(err), fatal=True)
            return
        self._state.reconnect_attempts += 1
        self._state.phase = ConnectionPhase.RECONNECTING
        logger.info("Reconnecting... (attempt %d/%d)", self._state.reconnect_attempts, self._policy.max_attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    def _cancel_pending_reconnect(self) -> None:
        # at most one retry chain; the running retry itself is left alone
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            self._reconnect_task = None

    async def _reconnect_after_delay(self) -> None:
        await self._sleep(self._policy.interval)
        if self._stopping or self._state.phase != ConnectionPhase.RECONNECTING:
            return
        await self.connect()

    async def _read_loop(self, socket: WireSocket) -> None:
        try:
            async for raw in socket:
                self.handle_inbound(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("WebSocket error: %s", e)
        if socket is self._socket:
            self._on_connection_lost()

    async def _write_loop(self, socket: WireSocket, outbox: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbox.get()
            try:
                await socket.send_str(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to send message: %s", e)
            finally:
                outbox.task_done()

    async def _keepalive_loop(self, socket: WireSocket) -> None:
        while socket is self._socket:
            await self._sleep(self._settings.KEEPALIVE_SECONDS)
            if socket is self._socket:
                self.send(Ping())

    async def drain(self) -> None:
        """Wait until every frame queued so far has been written."""
        if self._outbox is not None:
            await self._outbox.join()

    # --- outbound ---

    def send(self, message: Any) -> bool:
        """Queue one wire message. False (logged, dropped) when not connected."""
        if not self._state.is_connected or self._outbox is None:
            logger.error("Cannot send %s, not connected", getattr(message, "type", "message"))
            return False
        self._outbox.put_nowait(encode(message))
        return True

    def _notify(self, action: str, **payload: Any) -> None:
        notification = UiNotification(action=action, payload=payload)
        for observer in list(self._observers):
            try:
                observer(notification)
            except Exception as e:
                # UI may be gone; never let it break routing
                logger.debug("Observer failed for %s: %s", action, e)

    def _dispatch_to_tab(self, tab_id: Any, command: Any) -> dict[str, Any] | None:
        if self._host is None:
            logger.warning("No tab host; %s for tab %s not delivered", command.action, tab_id)
            return None
        try:
            return self._host.dispatch(tab_id, command)
        except LookupError as e:
            logger.warning("%s not delivered: %s", command.action, e)
        except Exception as e:
            logger.error("%s failed in tab %s: %s", command.action, tab_id, e)
        return None

    # --- inbound (coordinator) ---

    def handle_inbound(self, raw: str | bytes) -> None:
        try:
            message = parse_inbound(raw)
        except MalformedMessageError as e:
            logger.warning("Dropping inbound message: %s", e)
            return
        logger.debug("Coordinator message: %s", message.type)
        self._INBOUND_HANDLERS[type(message)](self, message)

    def _on_registered(self, message: Registered) -> None:
        self._client_id = message.client_id
        logger.info("Registered with coordinator: %s", message.client_id)
        self._notify("REGISTERED", clientId=message.client_id)

    def _on_session_created(self, message: SessionCreated) -> None:
        logger.info("Session created: %s", message.session_id)
        session = self._registry.get(message.session_id)
        if session is not None and session.state == SessionState.CREATED:
            self._registry.mark(message.session_id, SessionState.ACTIVE)
        self._notify("SESSION_CREATED", sessionId=message.session_id, session=message.session)

    def _on_capture_status(self, message: CaptureStatus) -> None:
        logger.info("Capture status: %s", message.status)
        self._notify("CAPTURE_STATUS", status=message.status)

    def _on_error(self, message: ErrorMessage) -> None:
        logger.error("Coordinator error: %s", message.error)
        self._notify("ERROR", error=message.error)

    def _on_session_ended(self, message: SessionEnded) -> None:
        logger.info("Session ended on coordinator: %s", message.session_id)
        self._notify("SESSION_ENDED", sessionId=message.session_id)

    def _on_pong(self, message: Pong) -> None:
        logger.debug("PONG")

    _INBOUND_HANDLERS: dict[type, Callable[..., None]] = {
        Registered: _on_registered,
        SessionCreated: _on_session_created,
        CaptureStatus: _on_capture_status,
        ErrorMessage: _on_error,
        SessionEnded: _on_session_ended,
        Pong: _on_pong,
    }

    # --- UI requests ---

    def request_start_capture(self, tab_id: int | str, title: str = "", platform: str | None = None) -> str | None:
        """Create a session and start capture in the tab. Returns the session id, or None if not connected."""
        if tab_id is None or tab_id == "":
            raise ValueError("tab_id is required to start capture")
        platform = platform or self._settings.DEFAULT_PLATFORM

        existing = self._registry.active_for_tab(tab_id)
        if existing is not None:
            logger.warning("Tab %s already has active session %s", tab_id, existing.session_id)
            return existing.session_id

        session_id = generate_session_id()
        if not self.send(CreateSession(session_id=session_id, title=title, platform=platform, tab_id=tab_id)):
            logger.error("Failed to create session on coordinator; start abandoned")
            return None

        self._registry.upsert(
            Session(session_id=session_id, title=title, platform=platform, tab_id=tab_id),
            active=True,
        )
        self._dispatch_to_tab(tab_id, StartCapture(session_id=session_id))
        logger.info("Capture session started: %s", session_id)
        return session_id

    def request_stop_capture(self, session_id: str, tab_id: int | str | None = None) -> None:
        """Stop capture in the tab, then END_SESSION. Local cleanup happens even if the send fails."""
        if tab_id is None:
            session = self._registry.get(session_id)
            tab_id = session.tab_id if session is not None else None
        if tab_id is not None:
            # extractor flushes synchronously: its CAPTION_DATA is queued before END_SESSION
            self._dispatch_to_tab(tab_id, StopCapture())
        if not self.send(EndSession(session_id=session_id)):
            logger.warning("END_SESSION for %s not delivered; ending locally", session_id)
        self._registry.end(session_id)
        logger.info("Capture session stopped: %s", session_id)

    def ingest_caption_batch(
        self,
        session_id: str,
        captions: list[CaptionEvent],
        platform: str | None = None,
    ) -> int:
        """Count and forward one batch. Returns the session's caption count after the batch."""
        session = self._registry.add_caption_count(session_id, len(captions))
        platform = platform or (session.platform if session is not None else self._settings.DEFAULT_PLATFORM)
        logger.info("Caption data received: %d captions for %s", len(captions), session_id)
        if not self.send(CaptionBatch(session_id=session_id, platform=platform, captions=captions)):
            logger.error("Failed to send captions to coordinator")
        count = session.caption_count if session is not None else len(captions)
        self._notify("CAPTION_COUNT_UPDATE", sessionId=session_id, count=count)
        return count

    # --- local channel (extractors) ---

    def handle_local(self, message: Any, tab_id: Any = None) -> None:
        """Route one extractor message. Accepts a model or a raw dict; unknown kinds are logged and ignored."""
        if isinstance(message, dict):
            try:
                message = parse_local(message)
            except ValidationError:
                logger.warning("Ignoring unknown local message: %r", message.get("action"))
                return
        handler = self._LOCAL_HANDLERS.get(type(message))
        if handler is None:
            logger.warning("Ignoring local message %s (not an extractor event)", getattr(message, "action", message))
            return
        handler(self, message, tab_id)

    def _on_meeting_detected(self, message: MeetingDetected, tab_id: Any) -> None:
        logger.info("Meeting detected: %s (tab %s)", message.platform, tab_id)
        if tab_id is not None:
            self._meetings[tab_id] = {"platform": message.platform, "url": message.url}
        self._notify("MEETING_DETECTED", platform=message.platform, url=message.url, tabId=tab_id)

    def _on_capture_started(self, message: CaptureStarted, tab_id: Any) -> None:
        logger.info("Capture started: %s", message.session_id)
        if message.session_id:
            self._registry.mark(message.session_id, SessionState.ACTIVE)
        self._notify("CAPTURE_STARTED", sessionId=message.session_id, platform=message.platform)

    def _on_capture_stopped(self, message: CaptureStopped, tab_id: Any) -> None:
        logger.info("Capture stopped: %s", message.session_id)
        self._notify("CAPTURE_STOPPED", sessionId=message.session_id)

    def _on_caption_data(self, message: CaptionData, tab_id: Any) -> None:
        if not message.session_id:
            logger.warning("Dropping %d captions without a session id", len(message.captions))
            return
        self.ingest_caption_batch(message.session_id, message.captions, message.platform)

    _LOCAL_HANDLERS: dict[type, Callable[..., None]] = {
        MeetingDetected: _on_meeting_detected,
        CaptureStarted: _on_capture_started,
        CaptureStopped: _on_capture_stopped,
        CaptionData: _on_caption_data,
    }

    def known_meeting(self, tab_id: Any) -> dict[str, Any] | None:
        meeting = self._meetings.get(tab_id)
        return dict(meeting) if meeting is not None else None


require_exhaustive(TransportAgent._INBOUND_HANDLERS, InboundMessage, "TransportAgent inbound")
require_exhaustive(TransportAgent._LOCAL_HANDLERS, ExtractorEvent, "TransportAgent local")
