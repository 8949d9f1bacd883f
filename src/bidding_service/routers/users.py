"""User display profile endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from bidding_service.core.state import get_app_state
from bidding_service.routers.validation import authenticate, parse_json_body
from bidding_service.schemas import UserProfileResponse

if TYPE_CHECKING:
    from bidding_service.services.profile_directory import ProfileDirectory

router = APIRouter()


def _profile_directory() -> ProfileDirectory:
    state = get_app_state()
    if state.profile_directory is None:
        msg = "ProfileDirectory not initialized"
        raise RuntimeError(msg)
    return state.profile_directory


# PUT /users/me MUST be registered before GET /users/{user_id}
@router.put("/users/me", response_model=UserProfileResponse)
async def upsert_my_profile(request: Request) -> dict[str, Any]:
    """Create or replace the caller's display profile."""
    body = await request.body()
    data = parse_json_body(body)
    actor_id = await authenticate(request)

    return await _profile_directory().upsert_profile(
        actor_id,
        username=data.get("username"),
        display_name=data.get("display_name"),
        avatar_url=data.get("avatar_url"),
    )


@router.get("/users/{user_id}", response_model=UserProfileResponse)
async def get_profile(user_id: str) -> dict[str, Any]:
    """Get a user's display profile."""
    return await _profile_directory().get_profile(user_id)
