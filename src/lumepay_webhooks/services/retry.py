"""Retry sweep over due delivery records."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog

from lumepay_webhooks.domain.webhooks import DeliveryStatus, WebhookDelivery
from lumepay_webhooks.services.dispatcher import WebhookDispatcher
from lumepay_webhooks.services.ledger import DeliveryLedger
from lumepay_webhooks.services.subscriptions import SubscriptionRegistry

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepStats:
    claimed: int = 0
    delivered: int = 0
    rescheduled: int = 0
    failed: int = 0
    errors: int = 0

    def summary(self) -> str | None:
        if not self.claimed:
            return None
        return (
            f"claimed={self.claimed} delivered={self.delivered} "
            f"rescheduled={self.rescheduled} failed={self.failed} errors={self.errors}"
        )


class RetryScheduler:
    """Re-dispatches failed deliveries whose ``next_retry_at`` has passed.

    Sweeps are serialized by a lock; within a sweep records are retried
    concurrently up to ``max_concurrency``. Cross-process exclusion comes
    from the ledger's atomic claim.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        ledger: DeliveryLedger,
        dispatcher: WebhookDispatcher,
        *,
        batch_size: int = 100,
        max_concurrency: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._registry = registry
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._lock = asyncio.Lock()
        self._clock = clock

    async def sweep(self, now: datetime | None = None) -> SweepStats:
        async with self._lock:
            stats = SweepStats()
            due = await self._ledger.due_for_retry(now or self._clock(), limit=self._batch_size)
            stats.claimed = len(due)
            await asyncio.gather(*(self._retry(delivery, stats) for delivery in due))
            return stats

    async def _retry(self, delivery: WebhookDelivery, stats: SweepStats) -> None:
        async with self._semaphore:
            log = logger.bind(
                delivery_id=str(delivery.id),
                subscription_id=str(delivery.subscription_id),
                event_type=delivery.event_type.value,
            )
            try:
                subscription = await self._registry.find_by_id(delivery.subscription_id)
                if subscription is None or not subscription.is_active:
                    await self._ledger.mark_exhausted(
                        delivery, "Webhook subscription is inactive", self._clock()
                    )
                    stats.failed += 1
                    log.info("webhook retry abandoned, subscription inactive")
                    return

                outcome = await self._dispatcher.deliver(subscription, delivery.to_event())
                now = self._clock()
                if outcome.skipped:
                    await self._ledger.mark_exhausted(delivery, outcome.error_message or "", now)
                    stats.failed += 1
                    log.info("webhook retry abandoned", reason=outcome.error_message)
                    return

                updated = await self._ledger.apply_attempt(delivery, outcome, now)
                if updated.status is DeliveryStatus.DELIVERED:
                    stats.delivered += 1
                    log.info("webhook retry delivered", attempts=updated.attempts)
                elif updated.status is DeliveryStatus.FAILED:
                    stats.failed += 1
                    log.warning(
                        "webhook retries exhausted",
                        attempts=updated.attempts,
                        status_code=outcome.status_code,
                        error=outcome.error_message,
                    )
                else:
                    stats.rescheduled += 1
                    log.info(
                        "webhook retry rescheduled",
                        attempts=updated.attempts,
                        next_retry_at=updated.next_retry_at.isoformat()
                        if updated.next_retry_at
                        else None,
                        error=outcome.error_message,
                    )

                try:
                    await self._registry.record_outcome(
                        subscription.id, success=outcome.success, at=now
                    )
                except Exception:
                    log.exception("failed to update webhook subscription health")
            except Exception:
                stats.errors += 1
                log.exception("webhook retry failed")
