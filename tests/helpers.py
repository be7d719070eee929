from __future__ import annotations

import asyncio
import json

from caption_relay.capture.dom import Document, Element
from caption_relay.transport.client import Connector, WireSocket

CONTAINER_ATTRS = {"data-tid": "closed-captions-v2-container"}


def caption_node(text: str, speaker: str | None = None) -> Element:
    children = []
    if speaker is not None:
        children.append(Element("span", {"data-tid": "closed-caption-speaker"}, text=speaker))
    children.append(Element("span", {"data-tid": "closed-caption-text"}, text=text))
    return Element("div", {"class": "entry"}, children=children)


def meeting_document(url: str = "https://teams.microsoft.com/_#/meet/abc") -> tuple[Document, Element]:
    doc = Document(url=url)
    container = Element("div", CONTAINER_ATTRS)
    doc.root.append_child(container)
    return doc, container


async def settle(turns: int = 50) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


class FakeSocket(WireSocket):
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def feed(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    async def _frames(self):
        while True:
            raw = await self._inbox.get()
            if raw is None:
                return
            yield raw

    def __aiter__(self):
        return self._frames()

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]


class FakeConnector(Connector):
    """outcomes: True = connect succeeds, False = refused; `default` once the list runs out."""

    def __init__(self, outcomes: list[bool] | None = None, default: bool = False) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = 0
        self.sockets: list[FakeSocket] = []

    async def connect(self, url: str) -> WireSocket:
        self.calls += 1
        ok = self.outcomes.pop(0) if self.outcomes else self.default
        if not ok:
            raise ConnectionRefusedError(f"refused: {url}")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)
