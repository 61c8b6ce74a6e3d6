"""Webhook notification sink.

POSTs each lifecycle event as JSON to one configured URL; the receiver fans
it out to e-mail, sockets or whatever else it runs.
"""

from typing import Any, Optional

import httpx
import structlog

from .base import EventKind, NotificationSink

logger = structlog.get_logger()

# Webhook timeout
WEBHOOK_TIMEOUT = 10.0


class WebhookDeliveryError(Exception):
    """The webhook answered with a non-success status."""


class WebhookNotificationSink(NotificationSink):
    """Deliver events to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = WEBHOOK_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise ValueError("webhook url is required")
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify_user(self, user_id: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        await self._send(EventKind(event_kind), {"user_id": user_id}, payload)

    async def broadcast_to_role(self, role: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        await self._send(EventKind(event_kind), {"role": role}, payload)

    async def _send(self, event_kind: EventKind, target: dict[str, str], payload: dict[str, Any]) -> None:
        body = {"event": event_kind.value, **target, "payload": payload}
        resp = await self._client.post(
            self.url,
            json=body,
            headers={
                "Content-Type": "application/json",
                "X-Procura-Event": event_kind.value,
            },
        )

        if resp.status_code >= 300:
            logger.warning(
                "webhook_non_success",
                url=self.url[:50],
                event=event_kind.value,
                status=resp.status_code,
            )
            raise WebhookDeliveryError(f"webhook returned {resp.status_code}")

        logger.debug("webhook_success", event=event_kind.value, status=resp.status_code, **target)

    async def close(self) -> None:
        await self._client.aclose()
