"""Live notification channel over WebSocket."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from bidding_service.config import get_settings
from bidding_service.core.exceptions import ServiceError
from bidding_service.core.state import get_app_state
from bidding_service.logging import get_logger
from bidding_service.services.live_connection import WebSocketConnection

router = APIRouter()

# Close code for a failed or missing auth handshake.
AUTH_FAILED_CLOSE_CODE = 4401


def _parse_frame(text: str) -> dict[str, Any] | None:
    try:
        frame = json.loads(text)
    except json.JSONDecodeError:
        return None
    return frame if isinstance(frame, dict) else None


async def _reject(websocket: WebSocket, error: str, message: str) -> None:
    await websocket.send_json({"type": "auth_error", "error": error, "message": message})
    await websocket.close(code=AUTH_FAILED_CLOSE_CODE)


@router.websocket("/ws")
async def live_channel(websocket: WebSocket) -> None:
    """
    Push channel for bid and message events.

    The first frame must be {"type": "auth", "token": "<jws>"} and arrive
    within the handshake timeout. After auth_ok the server pushes events
    and periodic pings; any inbound frame counts as liveness.
    """
    logger = get_logger(__name__)
    state = get_app_state()
    if state.token_validator is None or state.connection_registry is None:
        msg = "Live channel dependencies not initialized"
        raise RuntimeError(msg)
    registry = state.connection_registry

    await websocket.accept()

    try:
        first = await asyncio.wait_for(
            websocket.receive(),
            timeout=get_settings().live.handshake_timeout_seconds,
        )
    except TimeoutError:
        await _reject(websocket, "AUTH_TIMEOUT", "No auth frame received")
        return

    if first["type"] == "websocket.disconnect":
        return

    frame = _parse_frame(first.get("text") or "")
    token = frame.get("token") if frame is not None and frame.get("type") == "auth" else None
    if not isinstance(token, str):
        await _reject(websocket, "INVALID_PAYLOAD", "First frame must be an auth frame")
        return

    try:
        user_id = await state.token_validator.authenticate(token)
    except ServiceError as exc:
        await _reject(websocket, exc.error, exc.message)
        return

    handle = WebSocketConnection(websocket)
    await registry.register(user_id, handle)
    logger.info("Live connection opened", extra={"user_id": user_id})

    try:
        await handle.send_json({"type": "auth_ok", "user_id": user_id})
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            await registry.touch(handle)

            text = message.get("text")
            if text is None:
                continue
            if text == "ping":
                await handle.send_json({"type": "pong"})
                continue
            inbound = _parse_frame(text)
            if inbound is not None and inbound.get("type") == "ping":
                await handle.send_json({"type": "pong"})
    except (WebSocketDisconnect, ConnectionError, RuntimeError) as exc:
        logger.debug(
            "Live connection ended", extra={"user_id": user_id, "reason": type(exc).__name__}
        )
    finally:
        handle.mark_closed()
        await registry.unregister(user_id, handle)
        logger.info("Live connection closed", extra={"user_id": user_id})
