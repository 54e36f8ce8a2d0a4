"""
Relay transport.

NwcWallet only needs four things from a relay connection, so anything that
provides them can stand in for a websocket (tests use a mock).
"""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed

from .errors import NotConnected


class Transport(Protocol):
    async def connect(self, url: str) -> None: ...

    async def send(self, text: str) -> None: ...

    async def close(self) -> None: ...

    def messages(self) -> AsyncIterator[str]: ...


class WebsocketTransport:
    """
    A single websocket to one relay.

    messages() yields text frames until the connection closes; it does not
    reconnect.
    """

    def __init__(self, open_timeout: float = 10.0):
        self.open_timeout = open_timeout
        self._ws = None
        self.url: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self, url: str) -> None:
        logger.debug("Connecting to relay {}", url)
        self._ws = await websockets.connect(url, open_timeout=self.open_timeout)
        self.url = url

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise NotConnected("Relay connection is not open")
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise NotConnected(f"Relay connection closed: {e}") from e

    async def messages(self) -> AsyncIterator[str]:
        if self._ws is None:
            raise NotConnected("Relay connection is not open")
        ws = self._ws
        try:
            async for frame in ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8")
                yield frame
        except ConnectionClosed as e:
            logger.debug("Relay connection closed: {}", e)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
