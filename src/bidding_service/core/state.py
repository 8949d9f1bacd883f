"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncio

    from bidding_service.clients.identity_client import IdentityClient
    from bidding_service.clients.payment_client import PaymentClient
    from bidding_service.services.bid_manager import BidManager
    from bidding_service.services.connection_registry import ConnectionRegistry
    from bidding_service.services.message_center import MessageCenter
    from bidding_service.services.notification_dispatcher import NotificationDispatcher
    from bidding_service.services.profile_directory import ProfileDirectory
    from bidding_service.services.task_store import TaskStore
    from bidding_service.services.token_validator import TokenValidator


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: TaskStore | None = None
    identity_client: IdentityClient | None = None
    payment_client: PaymentClient | None = None
    token_validator: TokenValidator | None = None
    connection_registry: ConnectionRegistry | None = None
    dispatcher: NotificationDispatcher | None = None
    bid_manager: BidManager | None = None
    message_center: MessageCenter | None = None
    profile_directory: ProfileDirectory | None = None
    heartbeat_task: asyncio.Task[None] | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep service dependency references in sync with AppState client fields."""
        super().__setattr__(name, value)

        token_validator = self.__dict__.get("token_validator")
        if name == "identity_client" and value is not None and token_validator is not None:
            token_validator._identity_client = value

        bid_manager = self.__dict__.get("bid_manager")
        if name == "payment_client" and value is not None and bid_manager is not None:
            bid_manager.set_payment_client(value)
        elif name == "bid_manager" and value is not None:
            payment_client = self.__dict__.get("payment_client")
            if payment_client is not None:
                value.set_payment_client(payment_client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
