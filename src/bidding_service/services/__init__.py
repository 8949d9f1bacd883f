"""Service layer components."""

from bidding_service.services.bid_manager import BidManager
from bidding_service.services.connection_registry import ConnectionRegistry
from bidding_service.services.message_center import MessageCenter
from bidding_service.services.notification_dispatcher import NotificationDispatcher
from bidding_service.services.profile_directory import ProfileDirectory
from bidding_service.services.task_store import TaskStore
from bidding_service.services.token_validator import TokenValidator

__all__ = [
    "BidManager",
    "ConnectionRegistry",
    "MessageCenter",
    "NotificationDispatcher",
    "ProfileDirectory",
    "TaskStore",
    "TokenValidator",
]
