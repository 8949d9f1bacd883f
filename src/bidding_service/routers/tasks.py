"""Task creation, lookup, and bidding window endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bidding_service.core.state import get_app_state
from bidding_service.routers.validation import (
    authenticate,
    parse_bool_param,
    parse_int_param,
    parse_json_body,
)
from bidding_service.schemas import TaskResponse

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
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a task owned by the caller."""
    body = await request.body()
    data = parse_json_body(body)
    actor_id = await authenticate(request)

    result = await _bid_manager().create_task(
        actor_id,
        title=data.get("title"),
        description=data.get("description"),
        budget=data.get("budget"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    params = request.query_params
    tasks = await _bid_manager().list_tasks(
        owner_id=params.get("owner_id"),
        accepting_bids=parse_bool_param(params.get("accepting_bids"), "accepting_bids"),
        limit=parse_int_param(params.get("limit"), "limit", minimum=1),
        offset=parse_int_param(params.get("offset"), "offset", minimum=0),
    )
    return {"tasks": tasks}


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> dict[str, Any]:
    """Get a task by ID."""
    return await _bid_manager().get_task(task_id)


# ---------------------------------------------------------------------------
# Bidding window
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/bidding/open")
async def open_bidding(task_id: str, request: Request) -> dict[str, Any]:
    """Open a task for bids, optionally setting a deadline and budget."""
    body = await request.body()
    data = {} if body == b"" else parse_json_body(body)
    actor_id = await authenticate(request)

    return await _bid_manager().open_for_bidding(
        task_id,
        actor_id,
        deadline=data.get("bidding_deadline"),
        budget=data.get("budget"),
    )


@router.post("/tasks/{task_id}/bidding/close")
async def close_bidding(task_id: str, request: Request) -> dict[str, Any]:
    """Stop accepting new bids."""
    actor_id = await authenticate(request)
    return await _bid_manager().close_bidding(task_id, actor_id)
