"""
TabHost: delivers agent commands to the extractor of a monitored tab and
carries extractor messages back to the agent.

LocalTabHost runs every extractor in-process, keyed by tab id. Delivery is
synchronous in both directions, so a STOP_CAPTURE's final CAPTION_DATA reaches
the agent before dispatch() returns.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from caption_relay.capture.dom import Document
from caption_relay.capture.extractor import CaptionExtractor
from caption_relay.capture.platforms import PlatformProfile

logger = logging.getLogger(__name__)

# (message, tab_id) -> None
LocalSink = Callable[[Any, Any], None]


class TabHost(ABC):
    def __init__(self) -> None:
        self._sink: LocalSink | None = None

    def bind(self, sink: LocalSink) -> None:
        """Route extractor messages to sink (the agent's handle_local)."""
        self._sink = sink

    def _deliver(self, tab_id: Any, message: Any) -> None:
        if self._sink is None:
            logger.debug("No sink bound; dropping %s from tab %s", getattr(message, "action", message), tab_id)
            return
        self._sink(message, tab_id)

    @abstractmethod
    def dispatch(self, tab_id: Any, command: Any) -> dict[str, Any]:
        """Send a command to the tab's extractor; returns its reply. Raises LookupError for unknown tabs."""
        ...


class LocalTabHost(TabHost):
    def __init__(self) -> None:
        super().__init__()
        self._extractors: dict[Any, CaptionExtractor] = {}

    def attach(
        self,
        tab_id: Any,
        document: Document,
        profile: PlatformProfile | None = None,
        **extractor_kwargs: Any,
    ) -> CaptionExtractor:
        """Create the extractor for a tab and run meeting detection on its URL."""
        extractor = CaptionExtractor(
            document,
            emit=lambda message: self._deliver(tab_id, message),
            profile=profile,
            **extractor_kwargs,
        )
        self._extractors[tab_id] = extractor
        extractor.detect_meeting()
        return extractor

    def detach(self, tab_id: Any) -> None:
        """Tab closed: stop its capture (flushing) and forget it."""
        extractor = self._extractors.pop(tab_id, None)
        if extractor is not None:
            extractor.stop_capture()

    def extractor(self, tab_id: Any) -> CaptionExtractor | None:
        return self._extractors.get(tab_id)

    def dispatch(self, tab_id: Any, command: Any) -> dict[str, Any]:
        extractor = self._extractors.get(tab_id)
        if extractor is None:
            raise LookupError(f"No extractor attached to tab {tab_id!r}")
        return extractor.handle_command(command)
