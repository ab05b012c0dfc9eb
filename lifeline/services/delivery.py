"""Delivery adapters handed notifications by the NotificationDispatcher.

Adapters raise NotificationDeliveryFailure; the dispatcher logs and moves on.
"""

import logging

import httpx

from lifeline.config import NOTIFY_WEBHOOK_TIMEOUT
from lifeline.errors import NotificationDeliveryFailure
from lifeline.services.event_bus import TOPIC_PREFIXES, TopicEventBus

logger = logging.getLogger(__name__)

CONTACT_PREFIX = "contact:"


def contact_recipient(phone: str) -> str:
    return f"{CONTACT_PREFIX}{phone}"


class Deliverer:
    name = "base"

    def accepts(self, recipient: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def deliver(self, recipient: str, event_type: str, payload: dict) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class EventBusDeliverer(Deliverer):
    """Real-time push to topic rooms (dashboards, driver and patient apps)."""

    name = "realtime"

    def __init__(self, bus: TopicEventBus) -> None:
        self.bus = bus

    def accepts(self, recipient: str) -> bool:
        return recipient.startswith(TOPIC_PREFIXES)

    async def deliver(self, recipient: str, event_type: str, payload: dict) -> None:
        try:
            await self.bus.publish(recipient, event_type, payload)
        except Exception as e:
            raise NotificationDeliveryFailure(f"push to {recipient} failed: {e}") from e


class WebhookDeliverer(Deliverer):
    """POSTs person-directed notifications to the SMS/e-mail gateway."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = NOTIFY_WEBHOOK_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    def accepts(self, recipient: str) -> bool:
        return recipient.startswith(("user_", CONTACT_PREFIX))

    async def deliver(self, recipient: str, event_type: str, payload: dict) -> None:
        body = {"recipient": recipient, "event": event_type, "payload": payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=body)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryFailure(
                f"gateway returned {e.response.status_code} for {recipient}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationDeliveryFailure(f"gateway unreachable for {recipient}: {e}") from e
        logger.info("Webhook notification sent to %s: %s", recipient, event_type)
