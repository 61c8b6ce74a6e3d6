"""Lifecycle event notifications."""

from typing import Optional

from ..config import Settings, get_settings
from .base import EventKind, LogNotificationSink, NotificationSink
from .dispatch import Delivery, DispatchReport, NotificationDispatcher
from .webhook import WebhookNotificationSink


def create_sink(settings: Optional[Settings] = None) -> NotificationSink:
    """Build the sink named by ``settings.notification_backend``."""
    settings = settings or get_settings()
    if settings.notification_backend == "log":
        return LogNotificationSink()
    if settings.notification_backend == "webhook":
        return WebhookNotificationSink(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout,
        )
    raise ValueError(f"Unknown notification backend: {settings.notification_backend}")


__all__ = [
    "EventKind",
    "NotificationSink",
    "LogNotificationSink",
    "WebhookNotificationSink",
    "NotificationDispatcher",
    "Delivery",
    "DispatchReport",
    "create_sink",
]
