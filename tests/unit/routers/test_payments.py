"""Payment initiation and confirmation tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from bidding_service.core.exceptions import ServiceError
from bidding_service.core.state import get_app_state
from tests.unit.routers.conftest import (
    BOB_ID,
    setup_accepted_bid,
    setup_open_task,
)


def _payment_events(user_id: str) -> list[dict]:
    store = get_app_state().store
    messages = store.list_messages(user_id, unread_only=False, after_id=None, limit=100)
    return [message for message in messages if message["event_type"] == "payment_completed"]


class TestInitiatePayment:
    """POST /tasks/{task_id}/payment"""

    @pytest.mark.unit
    async def test_initiate_payment_returns_client_secret(self, client, alice, bob):
        task_id, bid_id = await setup_accepted_bid(client, alice, bob)

        response = await client.post(f"/tasks/{task_id}/payment", headers=alice)
        assert response.status_code == 200

        data = response.json()
        assert data["bid_id"] == bid_id
        assert data["amount"] == 9000
        assert data["payment_intent_id"].startswith("pi_")
        assert data["client_secret"]
        assert data["payment_status"] == "pending"

        bid = get_app_state().store.get_bid(bid_id)
        assert bid["payment_intent_id"] == data["payment_intent_id"]
        assert bid["payment_status"] == "pending"

    @pytest.mark.unit
    async def test_intent_metadata_names_the_task(self, client, alice, bob):
        task_id, bid_id = await setup_accepted_bid(client, alice, bob)
        await client.post(f"/tasks/{task_id}/payment", headers=alice)

        mock_payment = get_app_state().payment_client
        amount, metadata = mock_payment.create_payment_intent.call_args.args
        assert amount == 9000
        assert metadata == {
            "task_id": task_id,
            "bid_id": bid_id,
            "task_title": "Fix the garden fence",
        }

    @pytest.mark.unit
    async def test_initiate_without_winning_bid(self, client, alice):
        task_id = await setup_open_task(client, alice)

        response = await client.post(f"/tasks/{task_id}/payment", headers=alice)
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

    @pytest.mark.unit
    async def test_initiate_by_bidder_forbidden(self, client, alice, bob):
        task_id, _bid_id = await setup_accepted_bid(client, alice, bob)

        response = await client.post(f"/tasks/{task_id}/payment", headers=bob)
        assert response.status_code == 403

    @pytest.mark.unit
    async def test_initiate_after_success(self, client, alice, bob):
        task_id, _bid_id = await setup_accepted_bid(client, alice, bob)
        await client.post(f"/tasks/{task_id}/payment", headers=alice)
        await client.post(f"/tasks/{task_id}/payment/confirm", headers=alice)

        response = await client.post(f"/tasks/{task_id}/payment", headers=alice)
        assert response.status_code == 409

    @pytest.mark.unit
    async def test_payment_service_unavailable(self, client, alice, bob):
        task_id, bid_id = await setup_accepted_bid(client, alice, bob)
        get_app_state().payment_client.create_payment_intent = AsyncMock(
            side_effect=ServiceError(
                "PAYMENT_SERVICE_UNAVAILABLE",
                "Cannot connect to payment processor",
                502,
                {"retryable": True},
            )
        )

        response = await client.post(f"/tasks/{task_id}/payment", headers=alice)
        assert response.status_code == 502
        assert response.json()["details"]["retryable"] is True
        assert get_app_state().store.get_bid(bid_id)["payment_intent_id"] is None


class TestConfirmPayment:
    """POST /tasks/{task_id}/payment/confirm"""

    @pytest.mark.unit
    async def test_confirm_marks_succeeded_and_notifies_once(self, client, alice, bob):
        task_id, _bid_id = await setup_accepted_bid(client, alice, bob)
        await client.post(f"/tasks/{task_id}/payment", headers=alice)

        first = await client.post(f"/tasks/{task_id}/payment/confirm", headers=alice)
        assert first.status_code == 200
        assert first.json()["payment_status"] == "succeeded"

        second = await client.post(f"/tasks/{task_id}/payment/confirm", headers=bob)
        assert second.status_code == 200
        assert second.json()["payment_status"] == "succeeded"

        assert len(_payment_events(BOB_ID)) == 1

    @pytest.mark.unit
    async def test_confirm_while_pending(self, client, alice, bob, mock_payment_pending):
        task_id, _bid_id = await setup_accepted_bid(client, alice, bob)
        await client.post(f"/tasks/{task_id}/payment", headers=alice)

        response = await client.post(f"/tasks/{task_id}/payment/confirm", headers=alice)
        assert response.status_code == 200
        assert response.json()["payment_status"] == "pending"
        assert _payment_events(BOB_ID) == []

    @pytest.mark.unit
    async def test_confirm_before_initiate(self, client, alice, bob):
        task_id, _bid_id = await setup_accepted_bid(client, alice, bob)

        response = await client.post(f"/tasks/{task_id}/payment/confirm", headers=alice)
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

    @pytest.mark.unit
    async def test_confirm_by_stranger(self, client, alice, bob, carol):
        task_id, _bid_id = await setup_accepted_bid(client, alice, bob)
        await client.post(f"/tasks/{task_id}/payment", headers=alice)

        response = await client.post(f"/tasks/{task_id}/payment/confirm", headers=carol)
        assert response.status_code == 403
