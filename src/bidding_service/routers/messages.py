"""Inbox, conversation, and direct message endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bidding_service.core.exceptions import ServiceError
from bidding_service.core.state import get_app_state
from bidding_service.routers.validation import (
    authenticate,
    parse_bool_param,
    parse_int_param,
    parse_json_body,
)
from bidding_service.services.task_store import MAX_INTEGER

if TYPE_CHECKING:
    from bidding_service.services.message_center import MessageCenter

router = APIRouter()


def _message_center() -> MessageCenter:
    state = get_app_state()
    if state.message_center is None:
        msg = "MessageCenter not initialized"
        raise RuntimeError(msg)
    return state.message_center


@router.get("/messages")
async def list_messages(request: Request) -> dict[str, Any]:
    """The caller's messages in ascending id order."""
    actor_id = await authenticate(request)
    params = request.query_params
    messages = await _message_center().list_messages(
        actor_id,
        unread_only=parse_bool_param(params.get("unread_only"), "unread_only") is True,
        after_id=parse_int_param(params.get("after_id"), "after_id", minimum=0),
        limit=parse_int_param(params.get("limit"), "limit", minimum=1),
    )
    return {"messages": messages}


@router.get("/messages/unread-count")
async def unread_count(request: Request) -> dict[str, int]:
    """Number of unread messages for the caller."""
    actor_id = await authenticate(request)
    return {"unread": await _message_center().unread_count(actor_id)}


@router.post("/messages", status_code=201)
async def send_message(request: Request) -> JSONResponse:
    """Send a direct message."""
    body = await request.body()
    data = parse_json_body(body)
    actor_id = await authenticate(request)

    message = await _message_center().send_message(
        actor_id,
        receiver_id=data.get("receiver_id"),
        content=data.get("content"),
    )
    return JSONResponse(status_code=201, content=message)


@router.post("/messages/{message_id}/read")
async def mark_read(message_id: str, request: Request) -> dict[str, Any]:
    """Mark one of the caller's messages read."""
    actor_id = await authenticate(request)
    try:
        numeric_id = int(message_id)
    except ValueError as exc:
        raise ServiceError("MESSAGE_NOT_FOUND", "Message not found", 404, {}) from exc
    if not 0 < numeric_id <= MAX_INTEGER:
        raise ServiceError("MESSAGE_NOT_FOUND", "Message not found", 404, {})
    return await _message_center().mark_read(numeric_id, actor_id)


@router.get("/conversations")
async def list_conversations(request: Request) -> dict[str, Any]:
    """The caller's direct-message partners with unread counts."""
    actor_id = await authenticate(request)
    return {"conversations": await _message_center().list_conversations(actor_id)}


@router.get("/conversations/{partner_id}/messages")
async def get_thread(partner_id: str, request: Request) -> dict[str, Any]:
    """Messages exchanged with one partner, sent and received."""
    actor_id = await authenticate(request)
    params = request.query_params
    messages = await _message_center().get_thread(
        actor_id,
        partner_id,
        after_id=parse_int_param(params.get("after_id"), "after_id", minimum=0),
        limit=parse_int_param(params.get("limit"), "limit", minimum=1),
    )
    return {"partner_id": partner_id, "messages": messages}


@router.post("/conversations/{partner_id}/messages", status_code=201)
async def send_to_partner(partner_id: str, request: Request) -> JSONResponse:
    """Send a direct message into a conversation."""
    body = await request.body()
    data = parse_json_body(body)
    actor_id = await authenticate(request)

    message = await _message_center().send_message(
        actor_id,
        receiver_id=partner_id,
        content=data.get("content"),
    )
    return JSONResponse(status_code=201, content=message)


@router.post("/conversations/{partner_id}/read")
async def mark_conversation_read(partner_id: str, request: Request) -> dict[str, Any]:
    """Mark everything the partner sent the caller as read."""
    actor_id = await authenticate(request)
    return await _message_center().mark_conversation_read(actor_id, partner_id)
