"""
CaptionExtractor: turns mutations of a watched element subtree into a
deduplicated, batched stream of CaptionEvents.

Container discovery: the profile's container selectors are tried in order.
If none matches, the whole document is observed so captions that render later
are still caught; once a container shows up (new nodes added) observation is
rebound to it so the page is not scanned indefinitely.

Dedup is "differs from the previous accepted line": repeated partial renders of
the same caption are suppressed. Two genuinely identical lines back-to-back are
indistinguishable from a re-render and the second one is dropped.

Flush: at FLUSH_THRESHOLD events, every FLUSH_INTERVAL_SECONDS when non-empty,
and once on stop_capture() before CAPTURE_STOPPED is emitted.

All work runs on the caller's event loop. start_capture() spawns the observer
and flush-timer tasks when a loop is running; without one, the caller drives
process_pending() / flush() directly.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from caption_relay.capture.buffer import CaptionBuffer
from caption_relay.capture.dom import Document, Element, MutationRecord, MutationSubscription, TextNode
from caption_relay.capture.platforms import PlatformProfile, get_profile
from caption_relay.config import get_settings
from caption_relay.schemas.captions import CaptionEvent
from caption_relay.schemas.local import (
    CaptionData,
    CaptureStarted,
    CaptureStopped,
    ExtractorCommand,
    GetStatus,
    MeetingDetected,
    StartCapture,
    StopCapture,
    require_exhaustive,
)

logger = logging.getLogger(__name__)

EmitFn = Callable[[Any], None]


def _spawn(factory: Callable[[], Coroutine[Any, Any, None]]) -> asyncio.Task | None:
    """Schedule factory() on the running loop; None when there is no loop."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    return loop.create_task(factory())


def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()


class CaptionExtractor:
    """One extractor per monitored surface."""

    def __init__(
        self,
        document: Document,
        emit: EmitFn,
        profile: PlatformProfile | None = None,
        flush_interval: float | None = None,
        flush_threshold: int | None = None,
        min_chars: int | None = None,
    ) -> None:
        settings = get_settings()
        self._document = document
        self._emit = emit
        self._profile = profile or get_profile(settings.DEFAULT_PLATFORM)
        self._flush_interval = flush_interval if flush_interval is not None else settings.FLUSH_INTERVAL_SECONDS
        self._min_chars = min_chars if min_chars is not None else settings.MIN_CAPTION_CHARS
        self._buffer = CaptionBuffer(on_flush=self._emit_batch, threshold=flush_threshold)

        self._capturing = False
        self._session_id: str | None = None
        self._container: Element | None = None
        self._subscription: MutationSubscription | None = None
        self._last_text = ""
        self._observer_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None

    @property
    def platform(self) -> str:
        return self._profile.name

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def container(self) -> Element | None:
        return self._container

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def status(self) -> dict[str, Any]:
        """GET_STATUS reply."""
        return {
            "isCapturing": self._capturing,
            "platform": self.platform,
            "sessionId": self._session_id,
            "bufferSize": len(self._buffer),
        }

    # --- command channel ---

    def handle_command(self, command: Any) -> dict[str, Any]:
        """Dispatch one agent command; returns the reply payload."""
        handler = self._COMMAND_HANDLERS[type(command)]
        return handler(self, command)

    def _on_start(self, command: StartCapture) -> dict[str, Any]:
        self.start_capture(command.session_id)
        return {"success": True, "platform": self.platform}

    def _on_stop(self, command: StopCapture) -> dict[str, Any]:
        self.stop_capture()
        return {"success": True}

    def _on_status(self, command: GetStatus) -> dict[str, Any]:
        return self.status()

    _COMMAND_HANDLERS: dict[type, Callable[..., dict[str, Any]]] = {
        StartCapture: _on_start,
        StopCapture: _on_stop,
        GetStatus: _on_status,
    }

    def detect_meeting(self) -> bool:
        """Emit MEETING_DETECTED when the document URL is a meeting page for this platform."""
        url = self._document.url
        if not self._profile.is_meeting_url(url):
            return False
        logger.info("Meeting page detected (%s): %s", self.platform, url)
        self._post(MeetingDetected(platform=self.platform, url=url))
        return True

    # --- lifecycle ---

    def start_capture(self, session_id: str) -> None:
        if self._capturing:
            logger.info("Already capturing (session=%s); start ignored", self._session_id)
            return
        self._session_id = session_id
        self._capturing = True
        self._buffer.clear()
        self._last_text = ""
        logger.info("Starting capture with session %s", session_id)

        self._container = self._find_container()
        if self._container is None:
            logger.warning("Caption container not found; observing whole document until it appears")
            self._observe(self._document.root)
        else:
            self._observe(self._container)

        self._flush_task = _spawn(self._periodic_flush)
        self._post(CaptureStarted(session_id=session_id, platform=self.platform))

    def stop_capture(self) -> None:
        """Stop observing, flush what is buffered, then emit CAPTURE_STOPPED. Idempotent."""
        if not self._capturing:
            return
        logger.info("Stopping capture (session=%s, buffered=%d)", self._session_id, len(self._buffer))
        self._capturing = False
        if self._subscription is not None:
            self._subscription.disconnect()
            self._subscription = None
        _cancel(self._observer_task)
        _cancel(self._flush_task)
        self._observer_task = None
        self._flush_task = None

        # flush before notify: final captions must precede the stop on the channel
        self._buffer.flush()
        self._post(CaptureStopped(session_id=self._session_id, platform=self.platform))

        self._session_id = None
        self._container = None
        self._last_text = ""

    def flush(self) -> int:
        """Flush buffered events now. Returns the number sent."""
        return len(self._buffer.flush())

    # --- observation ---

    def _find_container(self) -> Element | None:
        for selector in self._profile.container_selectors:
            try:
                el = self._document.query_selector(selector)
            except ValueError:
                logger.warning("Skipping unsupported container selector %r", selector)
                continue
            if el is not None:
                logger.info("Found caption container with selector %s", selector)
                return el
        return None

    def _observe(self, target: Element) -> None:
        if self._subscription is not None:
            self._subscription.disconnect()
        self._subscription = self._document.observe(target)
        if self._observer_task is None or self._observer_task.done():
            self._observer_task = _spawn(self._consume)
        logger.debug("Observer started on %r", target)

    async def _consume(self) -> None:
        # Rebinding swaps self._subscription; the old iterator ends and the loop picks up the new one.
        while self._capturing and self._subscription is not None:
            subscription = self._subscription
            async for batch in subscription:
                self.handle_mutations(batch)
            if subscription is self._subscription:
                break

    async def _periodic_flush(self) -> None:
        while self._capturing:
            await asyncio.sleep(self._flush_interval)
            if self._capturing and len(self._buffer):
                logger.debug("Periodic flush: %d captions", len(self._buffer))
                self._buffer.flush()

    def process_pending(self) -> None:
        """Handle queued mutation records now. Used when no event loop drives the observer."""
        if self._subscription is not None:
            self.handle_mutations(self._subscription.take_records())

    def handle_mutations(self, batch: list[MutationRecord]) -> None:
        """Process one batch of mutation records."""
        if not self._capturing:
            return
        for record in batch:
            if self._container is None and record.added_nodes:
                container = self._find_container()
                if container is not None:
                    logger.info("Caption container appeared dynamically; rebinding observer")
                    self._container = container
                    self._observe(container)
                    return
            text, speaker = self._extract(record)
            self._accept(text, speaker)

    def _first_match(self, node: Element, selectors: tuple[str, ...]) -> Element | None:
        for selector in selectors:
            found = node.query_selector(selector)
            if found is not None:
                return found
        return None

    def _extract(self, record: MutationRecord) -> tuple[str, str | None]:
        """Caption candidate (text, speaker) from one record; ("", None) on anything odd."""
        text = ""
        speaker: str | None = None
        try:
            for node in record.added_nodes:
                if isinstance(node, Element):
                    speaker_el = self._first_match(node, self._profile.speaker_selectors)
                    if speaker_el is not None:
                        speaker = speaker_el.text_content.strip() or None
                    text_el = self._first_match(node, self._profile.caption_text_selectors)
                    text = (text_el if text_el is not None else node).text_content.strip()
                elif isinstance(node, TextNode):
                    text = node.data.strip()
            if record.type == "characterData" and record.target.text_content:
                text = record.target.text_content.strip()
        except Exception:
            logger.debug("Caption extraction failed for %r", record, exc_info=True)
            return "", None
        return text, speaker

    def _accept(self, text: str, speaker: str | None) -> bool:
        text = (text or "").strip()
        if not text or len(text) < self._min_chars or text == self._last_text:
            return False
        self._last_text = text
        event = CaptionEvent(speaker=speaker, text=text, platform=self.platform, session_id=self._session_id)
        logger.debug("Caption: %s", event.text)
        self._buffer.push(event)
        return True

    # --- outbound ---

    def _emit_batch(self, batch: list[CaptionEvent]) -> None:
        logger.info("Flushing buffer: %d captions", len(batch))
        self._post(CaptionData(session_id=self._session_id, platform=self.platform, captions=batch))

    def _post(self, message: Any) -> None:
        try:
            self._emit(message)
        except Exception as e:
            logger.warning("Failed to post %s to host: %s", getattr(message, "action", message), e)


require_exhaustive(CaptionExtractor._COMMAND_HANDLERS, ExtractorCommand, "CaptionExtractor")
