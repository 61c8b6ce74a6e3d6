"""Notification sink interface and event kinds."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


class EventKind(str, Enum):
    NEW_PROJECT = "new_project"
    BID_RECEIVED = "bid_received"
    BIDDING_CLOSED = "bidding_closed"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    PROJECT_CANCELLED = "project_cancelled"
    PROJECT_COMPLETED = "project_completed"
    PROJECT_UPDATE = "project_update"
    RATING_RECEIVED = "rating_received"


class NotificationSink(ABC):
    """Where lifecycle events go. Fire-and-forget; may raise on failure."""

    @abstractmethod
    async def notify_user(self, user_id: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def broadcast_to_role(self, role: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        pass


class LogNotificationSink(NotificationSink):
    """Sink that only writes structured log lines."""

    async def notify_user(self, user_id: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        logger.info("notification", user_id=user_id, event=EventKind(event_kind).value, **payload)

    async def broadcast_to_role(self, role: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        logger.info("notification_broadcast", role=role, event=EventKind(event_kind).value, **payload)
