"""Shared utilities used by the booking sync service."""

from .config import (
    GraphConfig,
    ServiceConfig,
    SyncConfig,
    build_webhook_url,
    is_allowed_webhook_url,
    load_service_config,
)
from .health import create_health_router
from .logging import RequestContextLogMiddleware, bind_sync_context, configure_logging
from .messaging import (
    BOOKINGS_CHANGED,
    ROOMS_CHANGED,
    SUBSCRIPTIONS_CHANGED,
    EventPublisher,
    notify_changed,
)
from .scheduler import PeriodicTask, cancel_task
from .startup import ensure_database

__all__ = [
    "GraphConfig",
    "ServiceConfig",
    "SyncConfig",
    "build_webhook_url",
    "is_allowed_webhook_url",
    "load_service_config",
    "create_health_router",
    "RequestContextLogMiddleware",
    "bind_sync_context",
    "configure_logging",
    "BOOKINGS_CHANGED",
    "ROOMS_CHANGED",
    "SUBSCRIPTIONS_CHANGED",
    "EventPublisher",
    "notify_changed",
    "PeriodicTask",
    "cancel_task",
    "ensure_database",
]
