"""Unit tests for MessageCenter and ProfileDirectory."""

from __future__ import annotations

import pytest

from bidding_service.core.exceptions import ServiceError
from bidding_service.services.connection_registry import ConnectionRegistry
from bidding_service.services.message_center import MessageCenter
from bidding_service.services.notification_dispatcher import NotificationDispatcher
from bidding_service.services.profile_directory import ProfileDirectory
from bidding_service.services.task_store import TaskStore


@pytest.fixture
def store(tmp_path):
    task_store = TaskStore(db_path=str(tmp_path / "bidding.db"))
    yield task_store
    task_store.close()


@pytest.fixture
def center(store) -> MessageCenter:
    dispatcher = NotificationDispatcher(
        store, ConnectionRegistry(heartbeat_timeout_seconds=60), push_timeout_seconds=0.05
    )
    return MessageCenter(store, dispatcher, max_message_length=20, max_page_size=2)


@pytest.mark.unit
async def test_page_size_is_capped(center) -> None:
    for index in range(3):
        await center.send_message("u-a", "u-b", f"msg {index}")

    page = await center.list_messages("u-b", unread_only=False, after_id=None, limit=100)
    assert [m["content"] for m in page] == ["msg 0", "msg 1"]

    rest = await center.list_messages(
        "u-b", unread_only=False, after_id=page[-1]["message_id"], limit=None
    )
    assert [m["content"] for m in rest] == ["msg 2"]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("receiver_id", "content"),
    [("", "hi"), (None, "hi"), ("u-b", "   "), ("u-b", 42), ("u-b", "x" * 21)],
)
async def test_send_message_validation(center, receiver_id, content) -> None:
    with pytest.raises(ServiceError) as exc_info:
        await center.send_message("u-a", receiver_id, content)
    assert exc_info.value.error == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_mark_read_keeps_first_timestamp(center) -> None:
    message = await center.send_message("u-a", "u-b", "hello")

    first = await center.mark_read(message["message_id"], "u-b")
    second = await center.mark_read(message["message_id"], "u-b")

    assert first["read"] is True
    assert second["read_at"] == first["read_at"]
    assert await center.unread_count("u-b") == 0


@pytest.mark.unit
async def test_mark_read_by_sender_forbidden(center) -> None:
    message = await center.send_message("u-a", "u-b", "hello")

    with pytest.raises(ServiceError) as exc_info:
        await center.mark_read(message["message_id"], "u-a")
    assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
async def test_mark_read_unknown(center) -> None:
    with pytest.raises(ServiceError) as exc_info:
        await center.mark_read(12345, "u-b")
    assert exc_info.value.error == "MESSAGE_NOT_FOUND"


@pytest.mark.unit
async def test_conversations_carry_partner_profile(center, store) -> None:
    await ProfileDirectory(store).upsert_profile("u-b", "bea", None, None)
    await center.send_message("u-a", "u-b", "hi")
    await center.send_message("u-c", "u-a", "hey")

    conversations = await center.list_conversations("u-a")

    assert [entry["partner_id"] for entry in conversations] == ["u-c", "u-b"]
    assert conversations[0]["partner"] is None
    assert conversations[1]["partner"]["username"] == "bea"
    assert conversations[1]["unread_count"] == 0


@pytest.mark.unit
async def test_thread_page_is_capped(center) -> None:
    await center.send_message("u-a", "u-b", "one")
    await center.send_message("u-b", "u-a", "two")
    await center.send_message("u-a", "u-b", "three")

    page = await center.get_thread("u-a", "u-b", after_id=None, limit=None)
    assert [m["content"] for m in page] == ["one", "two"]

    rest = await center.get_thread("u-b", "u-a", after_id=page[-1]["message_id"], limit=10)
    assert [m["content"] for m in rest] == ["three"]


@pytest.mark.unit
async def test_mark_conversation_read(center) -> None:
    await center.send_message("u-b", "u-a", "one")
    await center.send_message("u-b", "u-a", "two")
    await center.send_message("u-c", "u-a", "other")

    result = await center.mark_conversation_read("u-a", "u-b")

    assert result == {"partner_id": "u-b", "marked_read": 2}
    assert await center.unread_count("u-a") == 1


@pytest.mark.unit
async def test_profile_directory_round_trip(store) -> None:
    directory = ProfileDirectory(store)

    saved = await directory.upsert_profile("u-a", "  alice  ", "Alice", None)
    assert saved["username"] == "alice"

    fetched = await directory.get_profile("u-a")
    assert fetched["display_name"] == "Alice"

    with pytest.raises(ServiceError) as exc_info:
        await directory.get_profile("u-missing")
    assert exc_info.value.error == "USER_NOT_FOUND"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("username", "display_name", "avatar_url"),
    [("", None, None), ("x" * 65, None, None), ("alice", 7, None), ("alice", None, "u" * 2049)],
)
async def test_profile_directory_validation(store, username, display_name, avatar_url) -> None:
    directory = ProfileDirectory(store)

    with pytest.raises(ServiceError) as exc_info:
        await directory.upsert_profile("u-a", username, display_name, avatar_url)
    assert exc_info.value.error == "INVALID_PAYLOAD"
