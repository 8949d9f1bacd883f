"""API routers."""

from bidding_service.routers import bids, health, live, messages, payments, tasks, users

__all__ = ["bids", "health", "live", "messages", "payments", "tasks", "users"]
