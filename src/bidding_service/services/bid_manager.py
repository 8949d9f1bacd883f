"""Task and bid lifecycle: bidding, acceptance, payment, and completion."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, cast

from bidding_service.core.exceptions import ServiceError
from bidding_service.logging import get_logger
from bidding_service.services.notification_dispatcher import (
    EVENT_BID_ACCEPTED,
    EVENT_BID_REJECTED,
    EVENT_BID_SUBMITTED,
    EVENT_PAYMENT_COMPLETED,
)
from bidding_service.services.profile_directory import profile_summary
from bidding_service.services.task_store import MAX_INTEGER

if TYPE_CHECKING:
    from bidding_service.clients.payment_client import PaymentClient
    from bidding_service.services.notification_dispatcher import NotificationDispatcher
    from bidding_service.services.task_store import TaskStore

_BID_STATUSES = ("pending", "accepted", "rejected", "completed")


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _is_positive_int(value: object) -> bool:
    """Check if value is a storable positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_INTEGER


def _parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_amount(cents: int) -> str:
    return f"${cents // 100}.{cents % 100:02d}"


class BidManager:
    """
    Owns Task and Bid state transitions.

    Every transition checks its preconditions against persisted state and
    then applies a conditional write keyed on the expected current state, so
    two callers racing on the same bid or task cannot both succeed. Events
    go out through the NotificationDispatcher only after the write commits.
    """

    def __init__(
        self,
        store: TaskStore,
        dispatcher: NotificationDispatcher,
        payment_client: PaymentClient,
        owner_accept_echo: bool,
        max_title_length: int,
        max_description_length: int,
        max_proposal_length: int,
        max_page_size: int,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._payment_client = payment_client
        self._owner_accept_echo = owner_accept_echo
        self._max_title_length = max_title_length
        self._max_description_length = max_description_length
        self._max_proposal_length = max_proposal_length
        self._max_page_size = max_page_size
        self._logger = get_logger(__name__)

    def set_payment_client(self, payment_client: PaymentClient) -> None:
        """Replace the payment client (used when AppState swaps clients)."""
        self._payment_client = payment_client

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return task

    def _load_bid(self, bid_id: str) -> dict[str, Any]:
        bid = self._store.get_bid(bid_id)
        if bid is None:
            raise ServiceError("BID_NOT_FOUND", "Bid not found", 404, {})
        return bid

    def _reload_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} not found after update"
            raise RuntimeError(msg)
        return task

    def _reload_bid(self, bid_id: str) -> dict[str, Any]:
        bid = self._store.get_bid(bid_id)
        if bid is None:
            msg = f"Bid {bid_id} not found after update"
            raise RuntimeError(msg)
        return bid

    @staticmethod
    def _require_owner(task: dict[str, Any], actor_id: str, action: str) -> None:
        if actor_id != task["owner_id"]:
            raise ServiceError("FORBIDDEN", f"Only the task owner can {action}", 403, {})

    @staticmethod
    def _require_bid_on_task(task: dict[str, Any], bid: dict[str, Any]) -> None:
        if bid["task_id"] != task["task_id"]:
            raise ServiceError(
                "INVALID_STATE",
                "Bid does not belong to this task",
                409,
                {},
            )

    def _validate_text(
        self,
        value: object,
        field_name: str,
        max_length: int,
        *,
        required: bool,
    ) -> str | None:
        if value is None:
            if required:
                raise ServiceError(
                    "INVALID_PAYLOAD", f"Missing required field: {field_name}", 400, {}
                )
            return None
        if not isinstance(value, str):
            raise ServiceError("INVALID_PAYLOAD", f"{field_name} must be a string", 400, {})
        if required and len(value.strip()) == 0:
            raise ServiceError("INVALID_PAYLOAD", f"{field_name} must not be empty", 400, {})
        if len(value) > max_length:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"{field_name} must be at most {max_length} characters",
                400,
                {},
            )
        return value

    @staticmethod
    def _validate_budget(budget: object) -> int | None:
        if budget is None:
            return None
        if not _is_positive_int(budget):
            raise ServiceError("INVALID_AMOUNT", "budget must be a positive integer", 400, {})
        return cast("int", budget)

    @staticmethod
    def _validate_deadline(deadline: object) -> str | None:
        if deadline is None:
            return None
        if not isinstance(deadline, str):
            raise ServiceError(
                "INVALID_DEADLINE", "bidding_deadline must be an ISO 8601 string", 400, {}
            )
        try:
            parsed = _parse_timestamp(deadline)
        except ValueError as exc:
            raise ServiceError(
                "INVALID_DEADLINE", "bidding_deadline must be an ISO 8601 string", 400, {}
            ) from exc
        if parsed <= datetime.now(UTC):
            raise ServiceError(
                "INVALID_DEADLINE", "bidding_deadline must be in the future", 400, {}
            )
        return (
            parsed.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
        )

    @staticmethod
    def _deadline_passed(task: dict[str, Any]) -> bool:
        deadline = task["bidding_deadline"]
        if deadline is None:
            return False
        return datetime.now(UTC) >= _parse_timestamp(str(deadline))

    def _page_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._max_page_size
        return min(limit, self._max_page_size)

    async def _echo_acceptance_to_owner(self, task: dict[str, Any], bid: dict[str, Any]) -> None:
        """Confirmation copy of an acceptance in the owner's own inbox."""
        await self._dispatcher.dispatch(
            sender_id=task["owner_id"],
            receiver_id=task["owner_id"],
            task_id=task["task_id"],
            bid_id=bid["bid_id"],
            event_type=EVENT_BID_ACCEPTED,
            summary=f"You accepted a bid of {_format_amount(bid['amount'])} "
            f"on '{task['title']}'",
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(
        self,
        actor_id: str,
        title: object,
        description: object,
        budget: object,
    ) -> dict[str, Any]:
        """Create a task owned by actor_id. Bidding starts closed."""
        title_value = cast(
            "str",
            self._validate_text(title, "title", self._max_title_length, required=True),
        )
        description_value = self._validate_text(
            description, "description", self._max_description_length, required=False
        )
        budget_value = self._validate_budget(budget)

        now = _now_iso()
        task = {
            "task_id": f"t-{uuid.uuid4()}",
            "owner_id": actor_id,
            "title": title_value.strip(),
            "description": description_value,
            "budget": budget_value,
            "accepting_bids": False,
            "bidding_deadline": None,
            "winning_bid_id": None,
            "assignee_id": None,
            "completed": False,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self._store.insert_task(task)
        self._logger.info(
            "Task created", extra={"task_id": task["task_id"], "owner_id": actor_id}
        )
        return task

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """Get a task by ID."""
        return self._load_task(task_id)

    async def list_tasks(
        self,
        owner_id: str | None,
        accepting_bids: bool | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks newest first. The page size is capped at the configured maximum."""
        return self._store.list_tasks(
            owner_id=owner_id,
            accepting_bids=accepting_bids,
            limit=self._page_limit(limit),
            offset=offset,
        )

    async def open_for_bidding(
        self,
        task_id: str,
        actor_id: str,
        deadline: object,
        budget: object,
    ) -> dict[str, Any]:
        """
        Start accepting bids on a task.

        Error precedence:
        1. INVALID_DEADLINE / INVALID_AMOUNT
        2. TASK_NOT_FOUND
        3. FORBIDDEN: caller is not the owner
        4. INVALID_STATE: task already has a winner or is completed
        """
        deadline_value = self._validate_deadline(deadline)
        budget_value = self._validate_budget(budget)

        task = self._load_task(task_id)
        self._require_owner(task, actor_id, "open bidding")

        if task["winning_bid_id"] is not None or task["completed"]:
            raise ServiceError(
                "INVALID_STATE",
                "Cannot open bidding on a task that already has a winning bid",
                409,
                {},
            )

        updates: dict[str, Any] = {"accepting_bids": 1, "updated_at": _now_iso()}
        if deadline_value is not None:
            updates["bidding_deadline"] = deadline_value
        if budget_value is not None:
            updates["budget"] = budget_value

        if self._store.update_task(task_id, updates, require_open=True) == 0:
            raise ServiceError(
                "INVALID_STATE",
                "Cannot open bidding on a task that already has a winning bid",
                409,
                {},
            )

        self._logger.info(
            "Bidding opened",
            extra={"task_id": task_id, "bidding_deadline": deadline_value},
        )
        return self._reload_task(task_id)

    async def close_bidding(self, task_id: str, actor_id: str) -> dict[str, Any]:
        """Stop accepting bids. Pending bids stay pending."""
        task = self._load_task(task_id)
        self._require_owner(task, actor_id, "close bidding")

        if task["accepting_bids"]:
            self._store.update_task(
                task_id,
                {"accepting_bids": 0, "updated_at": _now_iso()},
                require_open=False,
            )
            self._logger.info("Bidding closed", extra={"task_id": task_id})
        return self._reload_task(task_id)

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    async def submit_bid(
        self,
        task_id: str,
        bidder_id: str,
        amount: object,
        proposal: object,
        estimated_time: object,
    ) -> dict[str, Any]:
        """
        Submit a pending bid and notify the task owner.

        Error precedence:
        1. INVALID_AMOUNT / INVALID_PAYLOAD
        2. TASK_NOT_FOUND
        3. FORBIDDEN: bidder owns the task
        4. INVALID_STATE: not accepting bids, or the bidding deadline has passed
        """
        if not _is_positive_int(amount):
            raise ServiceError("INVALID_AMOUNT", "Bid amount must be a positive integer", 400, {})
        amount_int = cast("int", amount)
        proposal_value = cast(
            "str",
            self._validate_text(proposal, "proposal", self._max_proposal_length, required=True),
        )
        if estimated_time is not None and not _is_positive_int(estimated_time):
            raise ServiceError(
                "INVALID_PAYLOAD", "estimated_time must be a positive integer", 400, {}
            )

        task = self._load_task(task_id)

        if bidder_id == task["owner_id"]:
            raise ServiceError("FORBIDDEN", "Cannot bid on your own task", 403, {})

        if not task["accepting_bids"]:
            raise ServiceError("INVALID_STATE", "Task is not accepting bids", 409, {})

        if self._deadline_passed(task):
            raise ServiceError("INVALID_STATE", "Bidding deadline has passed", 409, {})

        now = _now_iso()
        bid = {
            "bid_id": f"bid-{uuid.uuid4()}",
            "task_id": task_id,
            "bidder_id": bidder_id,
            "amount": amount_int,
            "proposal": proposal_value,
            "estimated_time": estimated_time,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
            "payment_intent_id": None,
            "payment_status": None,
        }
        if not self._store.insert_bid(bid):
            raise ServiceError("INVALID_STATE", "Task is not accepting bids", 409, {})

        self._logger.info(
            "Bid submitted",
            extra={"task_id": task_id, "bid_id": bid["bid_id"], "bidder_id": bidder_id},
        )
        await self._dispatcher.dispatch(
            sender_id=bidder_id,
            receiver_id=task["owner_id"],
            task_id=task_id,
            bid_id=str(bid["bid_id"]),
            event_type=EVENT_BID_SUBMITTED,
            summary=f"New bid of {_format_amount(amount_int)} on '{task['title']}'",
        )
        return bid

    async def accept_bid(self, task_id: str, bid_id: str, actor_id: str) -> dict[str, Any]:
        """
        Accept a pending bid and make its bidder the assignee.

        Competing bids stay pending. A passed bidding deadline does not
        block accepting a bid submitted before it.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is not the owner
        3. BID_NOT_FOUND
        4. INVALID_STATE: bid on another task, bid not pending, or task has a winner
        """
        task = self._load_task(task_id)
        self._require_owner(task, actor_id, "accept bids")

        bid = self._load_bid(bid_id)
        self._require_bid_on_task(task, bid)

        if bid["status"] != "pending":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot accept a bid in '{bid['status']}' status",
                409,
                {},
            )
        if task["winning_bid_id"] is not None or task["completed"]:
            raise ServiceError("INVALID_STATE", "Task already has a winning bid", 409, {})

        if not self._store.accept_bid(task_id, bid_id, bid["bidder_id"], _now_iso()):
            raise ServiceError("INVALID_STATE", "Task already has a winning bid", 409, {})

        updated_task = self._reload_task(task_id)
        updated_bid = self._reload_bid(bid_id)
        self._logger.info(
            "Bid accepted",
            extra={"task_id": task_id, "bid_id": bid_id, "assignee_id": bid["bidder_id"]},
        )

        await self._dispatcher.dispatch(
            sender_id=actor_id,
            receiver_id=bid["bidder_id"],
            task_id=task_id,
            bid_id=bid_id,
            event_type=EVENT_BID_ACCEPTED,
            summary=f"Your bid of {_format_amount(bid['amount'])} on "
            f"'{task['title']}' was accepted",
        )
        if self._owner_accept_echo:
            await self._echo_acceptance_to_owner(updated_task, updated_bid)

        return {"task": updated_task, "bid": updated_bid}

    async def reject_bid(self, task_id: str, bid_id: str, actor_id: str) -> dict[str, Any]:
        """Reject a pending bid. Other bids and the task's bidding flag are untouched."""
        task = self._load_task(task_id)
        self._require_owner(task, actor_id, "reject bids")

        bid = self._load_bid(bid_id)
        self._require_bid_on_task(task, bid)

        if bid["status"] != "pending":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot reject a bid in '{bid['status']}' status",
                409,
                {},
            )

        applied = self._store.update_bid(
            bid_id,
            {"status": "rejected", "updated_at": _now_iso()},
            expected_status="pending",
        )
        if applied == 0:
            raise ServiceError("INVALID_STATE", "Bid is no longer pending", 409, {})

        self._logger.info("Bid rejected", extra={"task_id": task_id, "bid_id": bid_id})
        await self._dispatcher.dispatch(
            sender_id=actor_id,
            receiver_id=bid["bidder_id"],
            task_id=task_id,
            bid_id=bid_id,
            event_type=EVENT_BID_REJECTED,
            summary=f"Your bid on '{task['title']}' was declined",
        )
        return self._reload_bid(bid_id)

    async def list_task_bids(self, task_id: str, actor_id: str) -> list[dict[str, Any]]:
        """The owner sees every bid on the task; anyone else sees only their own."""
        task = self._load_task(task_id)
        bidder_filter = None if actor_id == task["owner_id"] else actor_id
        bids = self._store.get_bids_for_task(task_id, bidder_filter)

        profiles = self._store.get_users([str(bid["bidder_id"]) for bid in bids])
        for bid in bids:
            bid["bidder"] = profile_summary(profiles.get(str(bid["bidder_id"])))
        return bids

    async def bids_received(self, actor_id: str) -> list[dict[str, Any]]:
        """Bids on tasks the caller owns, newest first, with the bidder's profile."""
        bids = self._store.get_bids_received(actor_id)
        profiles = self._store.get_users([str(bid["bidder_id"]) for bid in bids])
        for bid in bids:
            bid["bidder"] = profile_summary(profiles.get(str(bid["bidder_id"])))
        return bids

    async def bids_placed(self, actor_id: str) -> list[dict[str, Any]]:
        """Bids the caller placed, newest first, with the task owner's profile."""
        bids = self._store.get_bids_placed(actor_id)
        profiles = self._store.get_users([str(bid["task_owner_id"]) for bid in bids])
        for bid in bids:
            bid["task_owner"] = profile_summary(profiles.get(str(bid["task_owner_id"])))
        return bids

    # ------------------------------------------------------------------
    # Payment and completion
    # ------------------------------------------------------------------

    async def initiate_payment(self, task_id: str, actor_id: str) -> dict[str, Any]:
        """
        Open a payment intent for the winning bid's amount.

        Calling again while payment is still pending replaces the intent.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is not the owner
        3. INVALID_STATE: no winning bid, or it is already paid or completed
        4. PAYMENT_SERVICE_UNAVAILABLE / PAYMENT_REJECTED
        """
        task = self._load_task(task_id)
        self._require_owner(task, actor_id, "pay for it")

        if task["winning_bid_id"] is None:
            raise ServiceError("INVALID_STATE", "Task has no accepted bid", 409, {})

        bid = self._load_bid(str(task["winning_bid_id"]))
        if bid["status"] != "accepted" or bid["payment_status"] == "succeeded":
            raise ServiceError("INVALID_STATE", "Winning bid is already paid", 409, {})

        intent = await self._payment_client.create_payment_intent(
            bid["amount"],
            {
                "task_id": task_id,
                "bid_id": str(bid["bid_id"]),
                "task_title": str(task["title"]),
            },
        )

        applied = self._store.update_bid(
            str(bid["bid_id"]),
            {
                "payment_intent_id": intent["id"],
                "payment_status": "pending",
                "updated_at": _now_iso(),
            },
            expected_status="accepted",
            payment_unsettled=True,
        )
        if applied == 0:
            raise ServiceError("INVALID_STATE", "Winning bid is no longer payable", 409, {})

        self._logger.info(
            "Payment initiated",
            extra={
                "task_id": task_id,
                "bid_id": bid["bid_id"],
                "payment_intent_id": intent["id"],
            },
        )
        return {
            "task_id": task_id,
            "bid_id": bid["bid_id"],
            "amount": bid["amount"],
            "payment_intent_id": intent["id"],
            "client_secret": intent["client_secret"],
            "payment_status": "pending",
        }

    async def confirm_payment(self, task_id: str, actor_id: str) -> dict[str, Any]:
        """
        Ask the payment processor whether the winning bid's intent succeeded.

        Records the success once and notifies the bidder only on that first
        transition. Repeated confirmations are no-ops.
        """
        task = self._load_task(task_id)
        if actor_id not in (task["owner_id"], task["assignee_id"]):
            raise ServiceError(
                "FORBIDDEN",
                "Only the task owner or the assigned bidder can confirm payment",
                403,
                {},
            )

        if task["winning_bid_id"] is None:
            raise ServiceError("INVALID_STATE", "Task has no accepted bid", 409, {})

        bid = self._load_bid(str(task["winning_bid_id"]))
        intent_id = bid["payment_intent_id"]
        if intent_id is None:
            raise ServiceError("INVALID_STATE", "Payment has not been initiated", 409, {})

        result = {
            "task_id": task_id,
            "bid_id": bid["bid_id"],
            "payment_intent_id": intent_id,
            "payment_status": bid["payment_status"],
        }
        if bid["payment_status"] == "succeeded":
            return result

        if not await self._payment_client.confirm_payment_complete(str(intent_id)):
            return result

        applied = self._store.update_bid(
            str(bid["bid_id"]),
            {"payment_status": "succeeded", "updated_at": _now_iso()},
            expected_status=None,
            expected_payment_status="pending",
        )
        result["payment_status"] = "succeeded"
        if applied == 0:
            return result

        self._logger.info(
            "Payment completed",
            extra={"task_id": task_id, "bid_id": bid["bid_id"], "payment_intent_id": intent_id},
        )
        await self._dispatcher.dispatch(
            sender_id=task["owner_id"],
            receiver_id=bid["bidder_id"],
            task_id=task_id,
            bid_id=str(bid["bid_id"]),
            event_type=EVENT_PAYMENT_COMPLETED,
            summary=f"Payment of {_format_amount(bid['amount'])} for "
            f"'{task['title']}' completed",
        )
        return result

    async def complete_bid(self, task_id: str, bid_id: str, actor_id: str) -> dict[str, Any]:
        """Mark a paid, accepted bid completed and the task done."""
        task = self._load_task(task_id)
        if actor_id not in (task["owner_id"], task["assignee_id"]):
            raise ServiceError(
                "FORBIDDEN",
                "Only the task owner or the assigned bidder can complete the bid",
                403,
                {},
            )

        bid = self._load_bid(bid_id)
        self._require_bid_on_task(task, bid)

        if bid["status"] != "accepted":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot complete a bid in '{bid['status']}' status",
                409,
                {},
            )
        if bid["payment_status"] != "succeeded":
            raise ServiceError("INVALID_STATE", "Payment has not succeeded", 409, {})

        if not self._store.complete_bid(task_id, bid_id, _now_iso()):
            raise ServiceError("INVALID_STATE", "Bid is no longer completable", 409, {})

        self._logger.info("Bid completed", extra={"task_id": task_id, "bid_id": bid_id})
        return {"task": self._reload_task(task_id), "bid": self._reload_bid(bid_id)}

    # ------------------------------------------------------------------
    # Statistics (used by health endpoint)
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return aggregate task and bid statistics for health reporting."""
        counts: dict[str, int] = dict.fromkeys(_BID_STATUSES, 0)
        for status, count in self._store.count_bids_by_status().items():
            if status in counts:
                counts[status] = count
        return {
            "total_tasks": self._store.count_tasks(),
            "bids_by_status": counts,
            "total_messages": self._store.count_messages(),
        }
