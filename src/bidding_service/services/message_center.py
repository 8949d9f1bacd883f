"""Inbox reads, direct messages, and read receipts."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bidding_service.core.exceptions import ServiceError
from bidding_service.logging import get_logger
from bidding_service.services.profile_directory import profile_summary

if TYPE_CHECKING:
    from bidding_service.services.notification_dispatcher import NotificationDispatcher
    from bidding_service.services.task_store import TaskStore


class MessageCenter:
    """
    Reader-facing side of the persisted message log.

    Messages are returned in ascending message_id order, so a client can
    resume with after_id from the last id it saw. A conversation is the
    direct messages two users exchanged, in either direction.
    """

    def __init__(
        self,
        store: TaskStore,
        dispatcher: NotificationDispatcher,
        max_message_length: int,
        max_page_size: int,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._max_message_length = max_message_length
        self._max_page_size = max_page_size
        self._logger = get_logger(__name__)

    def _page(self, limit: int | None) -> int:
        return self._max_page_size if limit is None else min(limit, self._max_page_size)

    async def list_messages(
        self,
        actor_id: str,
        unread_only: bool,
        after_id: int | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        """The caller's inbox, oldest first."""
        return self._store.list_messages(
            actor_id,
            unread_only=unread_only,
            after_id=after_id,
            limit=self._page(limit),
        )

    async def unread_count(self, actor_id: str) -> int:
        return self._store.count_unread(actor_id)

    async def send_message(
        self,
        actor_id: str,
        receiver_id: object,
        content: object,
    ) -> dict[str, Any]:
        """Send a direct message from actor_id to receiver_id."""
        if not isinstance(receiver_id, str) or len(receiver_id) == 0:
            raise ServiceError(
                "INVALID_PAYLOAD", "receiver_id must be a non-empty string", 400, {}
            )
        if not isinstance(content, str) or len(content.strip()) == 0:
            raise ServiceError("INVALID_PAYLOAD", "content must be a non-empty string", 400, {})
        if len(content) > self._max_message_length:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"content must be at most {self._max_message_length} characters",
                400,
                {},
            )

        message = await self._dispatcher.send_direct_message(actor_id, receiver_id, content)
        self._logger.info(
            "Direct message sent",
            extra={"message_id": message["message_id"], "receiver_id": receiver_id},
        )
        return message

    async def mark_read(self, message_id: int, actor_id: str) -> dict[str, Any]:
        """
        Mark a message read. Only its receiver may do so.

        Marking an already-read message keeps the first read_at.
        """
        message = self._store.get_message(message_id)
        if message is None:
            raise ServiceError("MESSAGE_NOT_FOUND", "Message not found", 404, {})
        if message["receiver_id"] != actor_id:
            raise ServiceError(
                "FORBIDDEN", "Only the receiver can mark a message read", 403, {}
            )

        read_at = datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
        self._store.mark_message_read(message_id, read_at)

        updated = self._store.get_message(message_id)
        if updated is None:
            msg = f"Message {message_id} not found after update"
            raise RuntimeError(msg)
        return updated

    async def list_conversations(self, actor_id: str) -> list[dict[str, Any]]:
        """The caller's direct-message partners, most recent first, with profiles."""
        conversations = self._store.list_conversations(actor_id)
        profiles = self._store.get_users([str(entry["partner_id"]) for entry in conversations])
        for entry in conversations:
            entry["partner"] = profile_summary(profiles.get(str(entry["partner_id"])))
        return conversations

    async def get_thread(
        self,
        actor_id: str,
        partner_id: str,
        after_id: int | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        """Both sides of the caller's conversation with partner_id, oldest first."""
        return self._store.get_thread(
            actor_id,
            partner_id,
            after_id=after_id,
            limit=self._page(limit),
        )

    async def mark_conversation_read(self, actor_id: str, partner_id: str) -> dict[str, Any]:
        """Mark every unread message partner_id sent the caller as read."""
        read_at = datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
        marked = self._store.mark_conversation_read(actor_id, partner_id, read_at)
        if marked > 0:
            self._logger.info(
                "Conversation marked read",
                extra={"receiver_id": actor_id, "sender_id": partner_id, "marked": marked},
            )
        return {"partner_id": partner_id, "marked_read": marked}
