"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from bidding_service.core.state import get_app_state
from bidding_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return statistics."""
    state = get_app_state()
    total_tasks = 0
    total_messages = 0
    bids_by_status: dict[str, int] = {}
    if state.bid_manager is not None:
        stats = state.bid_manager.get_stats()
        total_tasks = stats["total_tasks"]
        total_messages = stats["total_messages"]
        bids_by_status = stats["bids_by_status"]

    live_connections = 0
    live_users = 0
    if state.connection_registry is not None:
        live_connections = await state.connection_registry.connection_count()
        live_users = await state.connection_registry.user_count()

    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        bids_by_status=bids_by_status,
        total_messages=total_messages,
        live_connections=live_connections,
        live_users=live_users,
    )
