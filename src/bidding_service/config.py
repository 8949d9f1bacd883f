"""
Configuration management for the bidding service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEYS = frozenset({"api_key"})


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_token_path: str
    timeout_seconds: int


class PaymentConfig(BaseModel):
    """Payment processor connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    api_key: str
    currency: str
    timeout_seconds: int


class NotificationsConfig(BaseModel):
    """Notification fan-out configuration."""

    model_config = ConfigDict(extra="forbid")
    owner_accept_echo: bool
    push_timeout_seconds: float


class HeartbeatConfig(BaseModel):
    """Live connection liveness probing."""

    model_config = ConfigDict(extra="forbid")
    interval_seconds: float
    timeout_seconds: float


class LiveConfig(BaseModel):
    """Live channel handshake configuration."""

    model_config = ConfigDict(extra="forbid")
    handshake_timeout_seconds: float


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class LimitsConfig(BaseModel):
    """Input size limits."""

    model_config = ConfigDict(extra="forbid")
    max_title_length: int
    max_description_length: int
    max_proposal_length: int
    max_message_length: int
    max_page_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    payment: PaymentConfig
    notifications: NotificationsConfig
    heartbeat: HeartbeatConfig
    live: LiveConfig
    request: RequestConfig
    limits: LimitsConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the YAML config file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next get_settings() re-reads the file."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
