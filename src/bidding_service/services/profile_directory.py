"""Display profiles used to label bidders and task owners."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bidding_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from bidding_service.services.task_store import TaskStore

_MAX_USERNAME_LENGTH = 64
_MAX_DISPLAY_NAME_LENGTH = 128
_MAX_AVATAR_URL_LENGTH = 2048


def _optional_text(value: object, field_name: str, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError("INVALID_PAYLOAD", f"{field_name} must be a string", 400, {})
    if len(value) > max_length:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be at most {max_length} characters",
            400,
            {},
        )
    return value


def profile_summary(profile: dict[str, Any] | None) -> dict[str, Any] | None:
    """Public display fields of a stored profile, or None for an unknown user."""
    if profile is None:
        return None
    return {
        "user_id": profile["user_id"],
        "username": profile["username"],
        "display_name": profile["display_name"],
        "avatar_url": profile["avatar_url"],
    }


class ProfileDirectory:
    """Stores each user's own display profile, keyed by the verified caller id."""

    def __init__(self, store: TaskStore) -> None:
        self._store = store

    async def upsert_profile(
        self,
        actor_id: str,
        username: object,
        display_name: object,
        avatar_url: object,
    ) -> dict[str, Any]:
        if not isinstance(username, str) or len(username.strip()) == 0:
            raise ServiceError("INVALID_PAYLOAD", "username must be a non-empty string", 400, {})
        if len(username) > _MAX_USERNAME_LENGTH:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"username must be at most {_MAX_USERNAME_LENGTH} characters",
                400,
                {},
            )

        profile = {
            "user_id": actor_id,
            "username": username.strip(),
            "display_name": _optional_text(display_name, "display_name", _MAX_DISPLAY_NAME_LENGTH),
            "avatar_url": _optional_text(avatar_url, "avatar_url", _MAX_AVATAR_URL_LENGTH),
            "updated_at": datetime.now(UTC)
            .isoformat(timespec="microseconds")
            .replace("+00:00", "Z"),
        }
        self._store.upsert_user(profile)
        return profile

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        profile = self._store.get_user(user_id)
        if profile is None:
            raise ServiceError("USER_NOT_FOUND", "User not found", 404, {})
        return profile
