"""Fan-out of payment-intent events to merchant subscriptions."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, List
from uuid import uuid4

import structlog

from lumepay_webhooks.domain.webhooks import (
    DeliveryOutcome,
    WebhookDelivery,
    WebhookEvent,
    WebhookEventType,
    WebhookSubscription,
)
from lumepay_webhooks.services.dispatcher import WebhookDispatcher
from lumepay_webhooks.services.ledger import DeliveryLedger
from lumepay_webhooks.services.subscriptions import SubscriptionRegistry
from lumepay_webhooks.signing import serialize_event

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_event(event_type: WebhookEventType, data: dict[str, Any]) -> WebhookEvent:
    """New event with a fresh id; raises ``TypeError`` if ``data`` is not JSON-serializable."""
    event = WebhookEvent(
        id=f"evt_{uuid4().hex}",
        type=event_type,
        data=data,
        created=int(time.time()),
    )
    serialize_event(event)
    return event


class WebhookNotifier:
    """Delivers one event to every matching subscription, concurrently.

    Delivery is at-least-once: a send that succeeded but could not be
    recorded may be repeated, so receivers should deduplicate on the event
    ``id``. No exception ever reaches the caller of :meth:`notify`.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        ledger: DeliveryLedger,
        dispatcher: WebhookDispatcher,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._registry = registry
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    async def notify(
        self,
        merchant: str,
        event_type: WebhookEventType | str,
        data: dict[str, Any],
    ) -> List[WebhookDelivery]:
        """Deliver and wait for every attempt to settle; returns recorded deliveries."""
        try:
            event = build_event(WebhookEventType(event_type), data)
            subscriptions = await self._registry.find_active_for_event(merchant, event.type)
        except Exception:
            logger.exception(
                "webhook fan-out failed", merchant=merchant, event_type=str(event_type)
            )
            return []

        logger.info(
            "sending webhook event",
            merchant=merchant,
            event_type=event.type.value,
            event_id=event.id,
            subscriptions=len(subscriptions),
        )
        results = await asyncio.gather(
            *(self._deliver_one(sub, event) for sub in subscriptions),
            return_exceptions=True,
        )
        deliveries: List[WebhookDelivery] = []
        for sub, result in zip(subscriptions, results):
            if isinstance(result, BaseException):
                logger.error(
                    "webhook delivery crashed",
                    subscription_id=str(sub.id),
                    error=repr(result),
                )
            elif result is not None:
                deliveries.append(result)
        return deliveries

    def notify_in_background(
        self,
        merchant: str,
        event_type: WebhookEventType | str,
        data: dict[str, Any],
    ) -> asyncio.Task:
        """Schedule :meth:`notify` without blocking the caller."""
        task = asyncio.create_task(self.notify(merchant, event_type, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background notifications (used on shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _deliver_one(
        self, subscription: WebhookSubscription, event: WebhookEvent
    ) -> WebhookDelivery | None:
        try:
            outcome = await self._dispatcher.deliver(subscription, event)
        except Exception as exc:
            logger.exception(
                "webhook dispatch raised",
                subscription_id=str(subscription.id),
                event_id=event.id,
            )
            outcome = DeliveryOutcome(success=False, error_message=str(exc) or type(exc).__name__)
        if outcome.skipped:
            logger.info(
                "webhook delivery skipped",
                subscription_id=str(subscription.id),
                reason=outcome.error_message,
            )
            return None

        now = self._clock()
        log = logger.bind(
            subscription_id=str(subscription.id),
            event_type=event.type.value,
            event_id=event.id,
            status_code=outcome.status_code,
        )
        if outcome.success:
            log.info("webhook delivered")
        else:
            log.warning("webhook delivery failed", error=outcome.error_message)

        delivery: WebhookDelivery | None = None
        try:
            delivery = await self._ledger.record(subscription.id, event, outcome, now)
        except Exception:
            log.exception("failed to record webhook delivery")
        try:
            await self._registry.record_outcome(subscription.id, success=outcome.success, at=now)
        except Exception:
            log.exception("failed to update webhook subscription health")
        return delivery
