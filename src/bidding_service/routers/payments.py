"""Payment endpoints for a task's winning bid."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from bidding_service.core.state import get_app_state
from bidding_service.routers.validation import authenticate

router = APIRouter()


@router.post("/tasks/{task_id}/payment")
async def initiate_payment(task_id: str, request: Request) -> dict[str, Any]:
    """Create a payment intent for the winning bid. Returns the client secret."""
    actor_id = await authenticate(request)

    state = get_app_state()
    if state.bid_manager is None:
        msg = "BidManager not initialized"
        raise RuntimeError(msg)

    return await state.bid_manager.initiate_payment(task_id, actor_id)


@router.post("/tasks/{task_id}/payment/confirm")
async def confirm_payment(task_id: str, request: Request) -> dict[str, Any]:
    """Poll the payment processor and record a succeeded payment."""
    actor_id = await authenticate(request)

    state = get_app_state()
    if state.bid_manager is None:
        msg = "BidManager not initialized"
        raise RuntimeError(msg)

    return await state.bid_manager.confirm_payment(task_id, actor_id)
