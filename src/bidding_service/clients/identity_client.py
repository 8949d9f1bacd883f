"""Async HTTP client for the Identity service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from bidding_service.core.exceptions import ServiceError
from bidding_service.logging import get_logger


@dataclass(frozen=True)
class VerifiedCaller:
    """A user the Identity service vouched for, with the token's claims."""

    user_id: str
    claims: dict[str, Any] = field(default_factory=dict)


def _unavailable(message: str) -> ServiceError:
    return ServiceError(
        error="IDENTITY_SERVICE_UNAVAILABLE",
        message=message,
        status_code=502,
        details={"retryable": True},
    )


class IdentityClient:
    """
    Client for caller token verification.

    POST {verify_token_path} with {"token": <jws>} answers
    {"valid": bool, "user_id": str, "claims": {...}}. Only the Identity
    service holds the users' public keys.
    """

    def __init__(
        self,
        base_url: str,
        verify_token_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_token_path = verify_token_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )
        self._logger = get_logger(__name__)

    async def verify_token(self, token: str) -> VerifiedCaller:
        """
        Resolve a signed token to the user who signed it.

        Raises:
            ServiceError: FORBIDDEN (403) when the signature does not verify
            ServiceError: INVALID_JWS (400) when no user is named for a valid token
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) when the service is
                unreachable or answers with anything but a JSON object
        """
        try:
            response = await self._client.post(self._verify_token_path, json={"token": token})
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Identity service request failed",
                extra={"error": repr(exc), "base_url": self._base_url},
            )
            raise _unavailable("Cannot connect to Identity service") from exc

        if response.status_code != 200:
            self._logger.warning(
                "Identity service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise _unavailable("Identity service returned unexpected status")

        try:
            body = response.json()
        except ValueError as exc:
            raise _unavailable("Identity service returned a malformed response") from exc
        if not isinstance(body, dict):
            raise _unavailable("Identity service returned a malformed response")

        if body.get("valid") is not True:
            raise ServiceError(
                error="FORBIDDEN",
                message="Token signature verification failed",
                status_code=403,
                details={},
            )

        user_id = body.get("user_id")
        if not isinstance(user_id, str) or len(user_id) == 0:
            raise ServiceError("INVALID_JWS", "Token signer is missing", 400, {})

        claims = body.get("claims")
        return VerifiedCaller(user_id=user_id, claims=claims if isinstance(claims, dict) else {})

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
