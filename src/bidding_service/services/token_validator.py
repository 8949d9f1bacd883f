"""Caller authentication through the Identity service."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bidding_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from bidding_service.clients.identity_client import IdentityClient


class TokenValidator:
    """Turns a bearer JWS into the verified caller id."""

    def __init__(self, identity_client: IdentityClient) -> None:
        self._identity_client = identity_client

    async def authenticate(self, token: str) -> str:
        """
        Verify a JWS token via the Identity service and return the signer's user id.

        Error precedence:
        - INVALID_JWS: token is not a three-part JWS compact serialization
        - IDENTITY_SERVICE_UNAVAILABLE: Identity service unreachable or malformed answer
        - FORBIDDEN: signature invalid
        - INVALID_JWS: Identity service did not name a signer
        """
        if not token:
            raise ServiceError("INVALID_JWS", "Token must be a non-empty string", 400, {})

        parts = token.split(".")
        if len(parts) != 3 or any(len(part) == 0 for part in parts):
            raise ServiceError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                400,
                {},
            )

        try:
            caller = await self._identity_client.verify_token(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
                {"retryable": True},
            ) from exc
        return caller.user_id
