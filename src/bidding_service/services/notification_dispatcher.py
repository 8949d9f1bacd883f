"""Fan-out of lifecycle events to persisted messages and live connections."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bidding_service.logging import get_logger
from bidding_service.services.task_store import StoreUnavailableError

if TYPE_CHECKING:
    from bidding_service.services.connection_registry import ConnectionRegistry, LiveHandle
    from bidding_service.services.task_store import TaskStore

EVENT_BID_SUBMITTED = "bid_submitted"
EVENT_BID_ACCEPTED = "bid_accepted"
EVENT_BID_REJECTED = "bid_rejected"
EVENT_PAYMENT_COMPLETED = "payment_completed"
EVENT_DIRECT_MESSAGE = "direct_message"


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch: the persisted message id (None if persisting failed)
    and how many live connections accepted the push."""

    message_id: int | None
    live_deliveries: int


class NotificationDispatcher:
    """
    Turns lifecycle events into a durable message plus a best-effort live push.

    The persisted message is the system of record. Persistence failures are
    logged and never propagate, since the originating transition has already
    committed. Live pushes are at-most-once with no retry.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: ConnectionRegistry,
        push_timeout_seconds: float,
    ) -> None:
        self._store = store
        self._registry = registry
        self._push_timeout_seconds = push_timeout_seconds
        self._logger = get_logger(__name__)

    async def dispatch(
        self,
        sender_id: str,
        receiver_id: str,
        task_id: str,
        bid_id: str,
        event_type: str,
        summary: str,
    ) -> DispatchResult:
        """Persist one message for the event and push it to the receiver's live handles."""
        message_id = self._persist(
            {
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": summary,
                "event_type": event_type,
                "task_id": task_id,
                "bid_id": bid_id,
                "created_at": _now_iso(),
            }
        )

        payload = {
            "type": event_type,
            "task_id": task_id,
            "bid_id": bid_id,
            "user_id": sender_id,
        }
        delivered = await self._push(receiver_id, payload)
        if delivered > 0 and message_id is not None:
            self._mark_delivered(message_id)
        return DispatchResult(message_id=message_id, live_deliveries=delivered)

    async def send_direct_message(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
    ) -> dict[str, Any]:
        """
        Persist a user-to-user message and push it live.

        Unlike lifecycle events, the message itself is the point of the
        operation, so a persistence failure propagates here.
        """
        message_id = self._store.insert_message(
            {
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": content,
                "event_type": EVENT_DIRECT_MESSAGE,
                "task_id": None,
                "bid_id": None,
                "created_at": _now_iso(),
            }
        )
        message = self._store.get_message(message_id)
        if message is None:
            msg = f"Message {message_id} not found after insert"
            raise RuntimeError(msg)

        delivered = await self._push(receiver_id, {"type": "new_message", "message": message})
        if delivered > 0:
            self._mark_delivered(message_id)
            message["delivered"] = True
        return message

    def _persist(self, message_data: dict[str, Any]) -> int | None:
        try:
            return self._store.insert_message(message_data)
        except StoreUnavailableError:
            self._logger.exception(
                "Failed to persist notification",
                extra={
                    "receiver_id": message_data["receiver_id"],
                    "event_type": message_data["event_type"],
                    "task_id": message_data["task_id"],
                    "bid_id": message_data["bid_id"],
                },
            )
            return None

    def _mark_delivered(self, message_id: int) -> None:
        try:
            self._store.mark_message_delivered(message_id)
        except StoreUnavailableError:
            self._logger.warning(
                "Failed to flag message as delivered",
                extra={"message_id": message_id},
            )

    async def _push(self, receiver_id: str, payload: dict[str, Any]) -> int:
        handles = await self._registry.handles_for(receiver_id)
        if len(handles) == 0:
            return 0

        live = [handle for handle in handles if not handle.closed.is_set()]
        results = await asyncio.gather(*(self._push_one(handle, payload) for handle in live))

        delivered = 0
        for handle, ok in zip(live, results, strict=True):
            if ok:
                delivered += 1
            else:
                await self._registry.unregister(receiver_id, handle)
        return delivered

    async def _push_one(self, handle: LiveHandle, payload: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(handle.send_json(payload), timeout=self._push_timeout_seconds)
        except Exception as exc:
            self._logger.debug(
                "Live push failed",
                extra={"error": repr(exc), "type": payload.get("type")},
            )
            return False
        return True
