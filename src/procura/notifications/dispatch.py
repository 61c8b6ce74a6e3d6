"""Best-effort dispatch of lifecycle events.

The dispatcher is the boundary where notification failures stop. Every
delivery in a batch runs concurrently and is awaited with
``return_exceptions=True``, so one failing recipient is logged and the rest
still go out. Nothing here is retried and nothing reaches the caller.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from .base import EventKind, NotificationSink

logger = structlog.get_logger()


@dataclass
class Delivery:
    """One notification to one user."""
    user_id: str
    event_kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchReport:
    """What happened to a batch."""
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.sent) + len(self.failed)


class NotificationDispatcher:
    """Sends batches of events through a sink without ever raising."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    async def send(self, deliveries: Iterable[Delivery], context: dict[str, Any] | None = None) -> DispatchReport:
        """Deliver a batch concurrently; failures are logged per recipient."""
        deliveries = list(deliveries)
        report = DispatchReport()
        if not deliveries:
            return report

        results = await asyncio.gather(
            *(self.sink.notify_user(d.user_id, d.event_kind, d.payload) for d in deliveries),
            return_exceptions=True,
        )

        for delivery, result in zip(deliveries, results):
            if isinstance(result, Exception):
                report.failed.append(delivery.user_id)
                logger.warning(
                    "notification_failed",
                    user_id=delivery.user_id,
                    event=EventKind(delivery.event_kind).value,
                    error=str(result),
                    **(context or {}),
                )
            else:
                report.sent.append(delivery.user_id)

        logger.info(
            "notifications_sent",
            total=report.total,
            success=len(report.sent),
            **(context or {}),
        )
        return report

    async def broadcast(self, role: str, event_kind: EventKind, payload: dict[str, Any]) -> bool:
        """Broadcast to a role. Returns False if the sink failed."""
        try:
            await self.sink.broadcast_to_role(role, event_kind, payload)
            return True
        except Exception as e:
            logger.warning(
                "notification_broadcast_failed",
                role=role,
                event=EventKind(event_kind).value,
                error=str(e),
            )
            return False
