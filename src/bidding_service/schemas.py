"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    bids_by_status: dict[str, int]
    total_messages: int
    live_connections: int
    live_users: int


class TaskResponse(BaseModel):
    """Full task detail response model."""

    model_config = ConfigDict(extra="forbid")
    task_id: str
    owner_id: str
    title: str
    description: str | None
    budget: int | None
    accepting_bids: bool
    bidding_deadline: str | None
    winning_bid_id: str | None
    assignee_id: str | None
    completed: bool
    completed_at: str | None
    created_at: str
    updated_at: str


class UserProfileResponse(BaseModel):
    """Display profile of a user."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    username: str
    display_name: str | None
    avatar_url: str | None
    updated_at: str
