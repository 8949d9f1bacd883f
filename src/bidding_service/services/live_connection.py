"""WebSocket-backed live handle."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from starlette.websockets import WebSocketState

if TYPE_CHECKING:
    from starlette.websockets import WebSocket


class WebSocketConnection:
    """
    Live handle over an accepted WebSocket.

    Sends are serialized because the dispatcher and the heartbeat may push
    to the same socket concurrently. `closed` is set once the socket is
    closed from either side.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._send_lock = asyncio.Lock()
        self.closed = asyncio.Event()

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed.is_set():
            msg = "Connection closed"
            raise ConnectionError(msg)
        async with self._send_lock:
            await self._websocket.send_json(payload)

    async def close(self, code: int) -> None:
        if self.closed.is_set():
            return
        self.closed.set()
        if self._websocket.application_state != WebSocketState.DISCONNECTED:
            await self._websocket.close(code=code)

    def mark_closed(self) -> None:
        """Record that the peer went away."""
        self.closed.set()
