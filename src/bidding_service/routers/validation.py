"""Shared request validation and authentication helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from bidding_service.core.exceptions import ServiceError
from bidding_service.core.state import get_app_state
from bidding_service.services.task_store import MAX_INTEGER

if TYPE_CHECKING:
    from fastapi import Request


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_bearer_token(authorization: str | None) -> str:
    """Extract JWS token from Authorization header."""
    if authorization is None:
        raise ServiceError(
            "INVALID_JWS",
            "Missing Authorization header",
            400,
            {},
        )

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "INVALID_JWS",
            "Authorization header must use Bearer scheme",
            400,
            {},
        )

    token = authorization[len("Bearer ") :]
    if not token:
        raise ServiceError(
            "INVALID_JWS",
            "Bearer token must not be empty",
            400,
            {},
        )

    return token


async def authenticate(request: Request) -> str:
    """Verify the request's bearer token and return the caller's user id."""
    token = extract_bearer_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)

    return await state.token_validator.authenticate(token)


def parse_int_param(
    raw: str | None,
    name: str,
    *,
    minimum: int,
) -> int | None:
    """Parse an optional integer query parameter with a lower bound and a storable upper bound."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc
    if value < minimum:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be >= {minimum}", 400, {})
    if value > MAX_INTEGER:
        raise ServiceError("INVALID_PAYLOAD", f"{name} is out of range", 400, {})
    return value


def parse_bool_param(raw: str | None, name: str) -> bool | None:
    """Parse an optional boolean query parameter ("true"/"false")."""
    if raw is None:
        return None
    lowered = raw.lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise ServiceError("INVALID_PAYLOAD", f"{name} must be true or false", 400, {})
