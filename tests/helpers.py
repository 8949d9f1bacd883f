"""Shared test helpers for JWS authentication and fakes."""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

from bidding_service.clients.identity_client import VerifiedCaller


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Ed25519 keypair -> (private_key, 'ed25519:<base64_pub>')."""
    private_key = Ed25519PrivateKey.generate()
    pub_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_key = f"ed25519:{base64.b64encode(pub_bytes).decode()}"
    return private_key, public_key


def make_jws_token(
    private_key: Ed25519PrivateKey,
    user_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": user_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def auth_headers(keypair: tuple[Ed25519PrivateKey, str], user_id: str) -> dict[str, str]:
    """Bearer Authorization header carrying a token signed as user_id."""
    token = make_jws_token(keypair[0], user_id, {"action": "authenticate"})
    return {"Authorization": f"Bearer {token}"}


def decode_jws_part(part: str) -> dict[str, Any]:
    """Decode one base64url JSON section of a JWS compact token."""
    padded = part + "=" * (-len(part) % 4)
    value: dict[str, Any] = json.loads(base64.urlsafe_b64decode(padded))
    return value


def verified_caller(token: str) -> VerifiedCaller:
    """What the Identity service vouches for: signer from kid, decoded claims."""
    header_b64, payload_b64, _signature = token.split(".")
    return VerifiedCaller(
        user_id=decode_jws_part(header_b64)["kid"],
        claims=decode_jws_part(payload_b64),
    )


class FakeHandle:
    """In-memory live handle recording every pushed payload."""

    def __init__(self, *, fail: bool = False, hang: bool = False) -> None:
        self.closed = asyncio.Event()
        self.sent: list[dict[str, Any]] = []
        self.close_codes: list[int] = []
        self._fail = fail
        self._hang = hang

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self._hang:
            await asyncio.sleep(3600)
        if self._fail:
            msg = "peer gone"
            raise ConnectionError(msg)
        self.sent.append(payload)

    async def close(self, code: int) -> None:
        self.close_codes.append(code)
        self.closed.set()
