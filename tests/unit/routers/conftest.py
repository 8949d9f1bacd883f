"""Router test fixtures with mocked Identity and payment services."""

from __future__ import annotations

import os
import uuid
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from bidding_service.app import create_app
from bidding_service.config import clear_settings_cache
from bidding_service.core.lifespan import lifespan
from bidding_service.core.state import get_app_state, reset_app_state
from tests.helpers import auth_headers, generate_keypair, verified_caller

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

# ---------------------------------------------------------------------------
# Fixed user IDs
# ---------------------------------------------------------------------------
ALICE_ID = "u-alice"
BOB_ID = "u-bob"
CAROL_ID = "u-carol"


def make_task_id() -> str:
    """Generate a unique task ID."""
    return f"t-{uuid.uuid4()}"


def make_bid_id() -> str:
    """Generate a unique bid ID."""
    return f"bid-{uuid.uuid4()}"


def write_config(tmp_path: Path, *, owner_accept_echo: bool = True) -> Path:
    """Write a complete test config.yaml and return its path."""
    config_content = f"""\
service:
  name: "bidding"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "test.db"}"
identity:
  base_url: "http://localhost:8001"
  verify_token_path: "/auth/verify-token"
  timeout_seconds: 10
payment:
  base_url: "http://localhost:12111"
  api_key: "sk_test_123"
  currency: "usd"
  timeout_seconds: 10
notifications:
  owner_accept_echo: {"true" if owner_accept_echo else "false"}
  push_timeout_seconds: 1
heartbeat:
  interval_seconds: 30
  timeout_seconds: 75
live:
  handshake_timeout_seconds: 2
request:
  max_body_size: 4096
limits:
  max_title_length: 200
  max_description_length: 2000
  max_proposal_length: 1000
  max_message_length: 500
  max_page_size: 50
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    return config_path


def install_mocks() -> tuple[AsyncMock, AsyncMock]:
    """Replace the external clients on AppState with mocks; return (identity, payment)."""
    state = get_app_state()

    # Identity mock: signer is the token's kid
    mock_identity = AsyncMock()
    mock_identity.close = AsyncMock()
    mock_identity.verify_token = AsyncMock(side_effect=verified_caller)
    state.identity_client = mock_identity

    # Payment mock: intents are created and report success
    mock_payment = AsyncMock()
    mock_payment.close = AsyncMock()
    mock_payment.create_payment_intent = AsyncMock(
        side_effect=lambda amount, metadata: {
            "id": f"pi_{uuid.uuid4().hex[:24]}",
            "client_secret": f"pi_secret_{uuid.uuid4().hex[:12]}",
            "status": "requires_payment_method",
        }
    )
    mock_payment.confirm_payment_complete = AsyncMock(return_value=True)
    state.payment_client = mock_payment

    return mock_identity, mock_payment


@pytest.fixture
def config_path(tmp_path: Path) -> Iterator[Path]:
    """Point CONFIG_PATH at a temporary config for the duration of a test."""
    path = write_config(tmp_path)
    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(path)
    clear_settings_cache()
    reset_app_state()

    yield path

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def app(config_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    _ = config_path
    test_app = create_app()
    async with lifespan(test_app):
        install_mocks()
        yield test_app


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Keypair fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def alice_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Alice's keypair."""
    return generate_keypair()


@pytest.fixture
def bob_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Bob's keypair."""
    return generate_keypair()


@pytest.fixture
def carol_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Carol's keypair."""
    return generate_keypair()


@pytest.fixture
def alice(alice_keypair: tuple[Ed25519PrivateKey, str]) -> dict[str, str]:
    """Alice's Authorization headers."""
    return auth_headers(alice_keypair, ALICE_ID)


@pytest.fixture
def bob(bob_keypair: tuple[Ed25519PrivateKey, str]) -> dict[str, str]:
    """Bob's Authorization headers."""
    return auth_headers(bob_keypair, BOB_ID)


@pytest.fixture
def carol(carol_keypair: tuple[Ed25519PrivateKey, str]) -> dict[str, str]:
    """Carol's Authorization headers."""
    return auth_headers(carol_keypair, CAROL_ID)


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_identity_unavailable(_app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_token = AsyncMock(
        side_effect=ConnectionError("Identity service unreachable")
    )


@pytest.fixture
def mock_payment_pending(_app: Any) -> None:
    """Configure the payment mock so intents have not succeeded yet."""
    state = get_app_state()
    state.payment_client.confirm_payment_complete = AsyncMock(return_value=False)


# ---------------------------------------------------------------------------
# Lifecycle helper functions
# ---------------------------------------------------------------------------
async def create_task(
    client: AsyncClient,
    headers: dict[str, str],
    *,
    title: str = "Fix the garden fence",
    description: str | None = "Two broken panels",
    budget: int | None = 10000,
) -> Any:
    """Create a task via POST /tasks and return the response."""
    body: dict[str, Any] = {"title": title, "description": description, "budget": budget}
    return await client.post("/tasks", json=body, headers=headers)


async def open_bidding(
    client: AsyncClient,
    headers: dict[str, str],
    task_id: str,
    **body: Any,
) -> Any:
    """Open a task for bids via POST /tasks/{task_id}/bidding/open."""
    return await client.post(f"/tasks/{task_id}/bidding/open", json=body, headers=headers)


async def submit_bid(
    client: AsyncClient,
    headers: dict[str, str],
    task_id: str,
    *,
    amount: int = 9000,
    proposal: str = "I can do it this weekend",
    estimated_time: int | None = 240,
) -> Any:
    """Submit a bid via POST /tasks/{task_id}/bids and return the response."""
    body: dict[str, Any] = {
        "amount": amount,
        "proposal": proposal,
        "estimated_time": estimated_time,
    }
    return await client.post(f"/tasks/{task_id}/bids", json=body, headers=headers)


async def accept_bid(
    client: AsyncClient,
    headers: dict[str, str],
    task_id: str,
    bid_id: str,
) -> Any:
    """Accept a bid via POST /tasks/{task_id}/bids/{bid_id}/accept."""
    return await client.post(f"/tasks/{task_id}/bids/{bid_id}/accept", headers=headers)


async def setup_open_task(client: AsyncClient, owner: dict[str, str]) -> str:
    """Create a task and open it for bids. Returns the task_id."""
    task_resp = await create_task(client, owner)
    task_id: str = task_resp.json()["task_id"]
    await open_bidding(client, owner, task_id)
    return task_id


async def setup_accepted_bid(
    client: AsyncClient,
    owner: dict[str, str],
    bidder: dict[str, str],
) -> tuple[str, str]:
    """Create a task, bid on it, and accept the bid. Returns (task_id, bid_id)."""
    task_id = await setup_open_task(client, owner)
    bid_resp = await submit_bid(client, bidder, task_id)
    bid_id: str = bid_resp.json()["bid_id"]
    await accept_bid(client, owner, task_id, bid_id)
    return task_id, bid_id
