"""
CaptionBuffer: ordered caption events held between flushes.

Two triggers share one buffer: the count threshold (checked on push) and the
extractor's periodic timer (calls flush()). Both run on the same event loop,
so a flush swaps the list out in one step and no event lands in two batches.
"""
from __future__ import annotations

from typing import Callable

from caption_relay.config import get_settings
from caption_relay.schemas.captions import CaptionEvent


class CaptionBuffer:
    """
    Accumulates CaptionEvents in extraction order. Calls on_flush(batch) when
    the buffer reaches threshold or when flush() is called with a non-empty buffer.
    """

    def __init__(
        self,
        on_flush: Callable[[list[CaptionEvent]], None],
        threshold: int | None = None,
    ) -> None:
        settings = get_settings()
        self._threshold = max(1, threshold if threshold is not None else settings.FLUSH_THRESHOLD)
        self._on_flush = on_flush
        self._events: list[CaptionEvent] = []

    @property
    def threshold(self) -> int:
        return self._threshold

    def __len__(self) -> int:
        return len(self._events)

    def push(self, event: CaptionEvent) -> None:
        """Append one event. Flushes when the threshold is reached."""
        self._events.append(event)
        if len(self._events) >= self._threshold:
            self.flush()

    def flush(self) -> list[CaptionEvent]:
        """Hand every buffered event to on_flush and clear. Empty buffer = no call."""
        if not self._events:
            return []
        batch, self._events = self._events, []
        self._on_flush(batch)
        return batch

    def clear(self) -> None:
        self._events = []
