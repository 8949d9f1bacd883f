"""Bid submission, listing, and decision endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bidding_service.core.state import get_app_state
from bidding_service.routers.validation import authenticate, parse_json_body

if TYPE_CHECKING:
    from bidding_service.services.bid_manager import BidManager

router = APIRouter()


def _bid_manager() -> BidManager:
    state = get_app_state()
    if state.bid_manager is None:
        msg = "BidManager not initialized"
        raise RuntimeError(msg)
    return state.bid_manager


# ---------------------------------------------------------------------------
# Caller-scoped listings (static paths)
# ---------------------------------------------------------------------------


@router.get("/bids/received")
async def bids_received(request: Request) -> dict[str, Any]:
    """Bids on tasks the caller owns."""
    actor_id = await authenticate(request)
    return {"bids": await _bid_manager().bids_received(actor_id)}


@router.get("/bids/placed")
async def bids_placed(request: Request) -> dict[str, Any]:
    """Bids the caller placed."""
    actor_id = await authenticate(request)
    return {"bids": await _bid_manager().bids_placed(actor_id)}


# ---------------------------------------------------------------------------
# /tasks/{task_id}/bids
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/bids", status_code=201)
async def submit_bid(task_id: str, request: Request) -> JSONResponse:
    """Submit a bid on a task."""
    body = await request.body()
    data = parse_json_body(body)
    actor_id = await authenticate(request)

    result = await _bid_manager().submit_bid(
        task_id,
        actor_id,
        amount=data.get("amount"),
        proposal=data.get("proposal"),
        estimated_time=data.get("estimated_time"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/bids")
async def list_bids(task_id: str, request: Request) -> dict[str, Any]:
    """List bids on a task visible to the caller."""
    actor_id = await authenticate(request)
    bids = await _bid_manager().list_task_bids(task_id, actor_id)
    return {"task_id": task_id, "bids": bids}


@router.post("/tasks/{task_id}/bids/{bid_id}/accept")
async def accept_bid(task_id: str, bid_id: str, request: Request) -> dict[str, Any]:
    """Accept a bid and assign its bidder."""
    actor_id = await authenticate(request)
    return await _bid_manager().accept_bid(task_id, bid_id, actor_id)


@router.post("/tasks/{task_id}/bids/{bid_id}/reject")
async def reject_bid(task_id: str, bid_id: str, request: Request) -> dict[str, Any]:
    """Reject a pending bid."""
    actor_id = await authenticate(request)
    return await _bid_manager().reject_bid(task_id, bid_id, actor_id)


@router.post("/tasks/{task_id}/bids/{bid_id}/complete")
async def complete_bid(task_id: str, bid_id: str, request: Request) -> dict[str, Any]:
    """Mark a paid bid completed."""
    actor_id = await authenticate(request)
    return await _bid_manager().complete_bid(task_id, bid_id, actor_id)
