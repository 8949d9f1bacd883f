"""Application lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from bidding_service.clients.identity_client import IdentityClient
from bidding_service.clients.payment_client import PaymentClient
from bidding_service.config import get_settings
from bidding_service.core.state import init_app_state
from bidding_service.logging import get_logger, setup_logging
from bidding_service.services.bid_manager import BidManager
from bidding_service.services.connection_registry import ConnectionRegistry
from bidding_service.services.message_center import MessageCenter
from bidding_service.services.notification_dispatcher import NotificationDispatcher
from bidding_service.services.profile_directory import ProfileDirectory
from bidding_service.services.task_store import TaskStore
from bidding_service.services.token_validator import TokenValidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    store = TaskStore(db_path=settings.database.path)
    state.store = store

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_token_path=settings.identity.verify_token_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client
    state.token_validator = TokenValidator(identity_client=identity_client)

    payment_client = PaymentClient(
        base_url=settings.payment.base_url,
        api_key=settings.payment.api_key,
        currency=settings.payment.currency,
        timeout_seconds=settings.payment.timeout_seconds,
    )
    state.payment_client = payment_client

    registry = ConnectionRegistry(
        heartbeat_timeout_seconds=settings.heartbeat.timeout_seconds,
        ping_timeout_seconds=settings.notifications.push_timeout_seconds,
    )
    state.connection_registry = registry

    dispatcher = NotificationDispatcher(
        store=store,
        registry=registry,
        push_timeout_seconds=settings.notifications.push_timeout_seconds,
    )
    state.dispatcher = dispatcher

    state.bid_manager = BidManager(
        store=store,
        dispatcher=dispatcher,
        payment_client=payment_client,
        owner_accept_echo=settings.notifications.owner_accept_echo,
        max_title_length=settings.limits.max_title_length,
        max_description_length=settings.limits.max_description_length,
        max_proposal_length=settings.limits.max_proposal_length,
        max_page_size=settings.limits.max_page_size,
    )
    state.message_center = MessageCenter(
        store=store,
        dispatcher=dispatcher,
        max_message_length=settings.limits.max_message_length,
        max_page_size=settings.limits.max_page_size,
    )
    state.profile_directory = ProfileDirectory(store=store)

    state.heartbeat_task = asyncio.create_task(
        registry.run_heartbeat(settings.heartbeat.interval_seconds)
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
            "payment_base_url": settings.payment.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    state.heartbeat_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await state.heartbeat_task

    await registry.close_all()

    await identity_client.close()
    await payment_client.close()

    store.close()
