"""
WebSocket client seam for the transport agent.

Connector.connect(url) opens one connection and returns a WireSocket: send_str()
for outbound JSON frames, async iteration over inbound text frames (ends on
close), close(). AiohttpConnector is the real implementation; tests inject
their own Connector.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

import aiohttp

from caption_relay.errors import SendFailure

logger = logging.getLogger(__name__)


class WireSocket(ABC):
    """One open connection to the coordinator."""

    @abstractmethod
    async def send_str(self, data: str) -> None:
        ...

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str]:
        """Inbound text frames until the connection closes. Raises on transport error."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class Connector(ABC):
    @abstractmethod
    async def connect(self, url: str) -> WireSocket:
        """Open a connection or raise (aiohttp.ClientError, OSError, TimeoutError...)."""
        ...


class AiohttpWireSocket(WireSocket):
    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session = session
        self._ws = ws

    async def send_str(self, data: str) -> None:
        if self._ws.closed:
            raise SendFailure("WebSocket is closed")
        await self._ws.send_str(data)

    async def _frames(self) -> AsyncIterator[str]:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"WebSocket error: {self._ws.exception()}")
        logger.debug("WebSocket closed (code=%s)", self._ws.close_code)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._frames()

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()


class AiohttpConnector(Connector):
    """Opens a fresh aiohttp ClientSession per connection."""

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout

    async def connect(self, url: str) -> WireSocket:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=self._timeout))
        try:
            ws = await session.ws_connect(url)
        except BaseException:
            await session.close()
            raise
        return AiohttpWireSocket(session, ws)
