"""Delivery ledger: records attempts and owns the retry state machine.

State per delivery record::

    first attempt ──success──> delivered
          │
          └─failure──> pending (retry-eligible, next_retry_at set)
                          │ retry success ──> delivered
                          │ retry failure, attempts < max ──> pending (later next_retry_at)
                          │ retry failure, attempts == max ──> failed
                          └ subscription inactive ──> failed (no attempt)

The delay after the n-th failed attempt is ``base * 2 ** (n - 1)``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List
from uuid import UUID

from lumepay_webhooks.domain.webhooks import (
    DeliveryOutcome,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEvent,
)
from lumepay_webhooks.repositories.protocols import DeliveryStore


def backoff_delay(attempts: int, *, base_seconds: float) -> timedelta:
    # attempts is 1-based
    return timedelta(seconds=base_seconds * 2 ** max(attempts - 1, 0))


def next_state(
    delivery: WebhookDelivery,
    outcome: DeliveryOutcome,
    now: datetime,
    *,
    max_attempts: int,
    backoff_base_seconds: float,
) -> WebhookDelivery:
    """Apply one retry attempt's outcome to a record (pure, no I/O)."""
    if delivery.is_terminal:
        return delivery

    attempts = min(delivery.attempts + 1, max_attempts)
    update = {
        "attempts": attempts,
        "response_code": outcome.status_code,
        "response_body": outcome.response_body,
        "error_message": outcome.error_message,
        "claimed_at": None,
        "updated_at": now,
    }
    if outcome.success:
        update.update(status=DeliveryStatus.DELIVERED, delivered_at=now, next_retry_at=None)
    elif attempts >= max_attempts:
        update.update(status=DeliveryStatus.FAILED, next_retry_at=None)
    else:
        update.update(
            status=DeliveryStatus.PENDING,
            next_retry_at=now + backoff_delay(attempts, base_seconds=backoff_base_seconds),
        )
    return delivery.model_copy(update=update)


class DeliveryLedger:
    def __init__(
        self,
        store: DeliveryStore,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 60.0,
    ):
        self._store = store
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds

    async def record(
        self,
        subscription_id: UUID,
        event: WebhookEvent,
        outcome: DeliveryOutcome,
        now: datetime,
    ) -> WebhookDelivery:
        """Create the record for the first attempt of an (event, subscription) pair."""
        status = DeliveryStatus.DELIVERED if outcome.success else DeliveryStatus.PENDING
        next_retry_at = None
        if not outcome.success:
            if self.max_attempts <= 1:
                status = DeliveryStatus.FAILED
            else:
                next_retry_at = now + backoff_delay(1, base_seconds=self.backoff_base_seconds)
        return await self._store.record(
            subscription_id=subscription_id,
            event=event,
            status=status,
            attempts=1,
            response_code=outcome.status_code,
            response_body=outcome.response_body,
            error_message=outcome.error_message,
            next_retry_at=next_retry_at,
            delivered_at=now if outcome.success else None,
        )

    async def due_for_retry(self, now: datetime, *, limit: int = 100) -> List[WebhookDelivery]:
        """Claim due retry-eligible records; a claimed record is not returned again."""
        return await self._store.claim_due(now, max_attempts=self.max_attempts, limit=limit)

    async def update(self, delivery: WebhookDelivery) -> bool:
        return await self._store.update(delivery)

    async def apply_attempt(
        self, delivery: WebhookDelivery, outcome: DeliveryOutcome, now: datetime
    ) -> WebhookDelivery:
        updated = next_state(
            delivery,
            outcome,
            now,
            max_attempts=self.max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
        )
        await self._store.update(updated)
        return updated

    async def mark_exhausted(
        self, delivery: WebhookDelivery, reason: str, now: datetime
    ) -> WebhookDelivery:
        """Terminal failure without an attempt (attempt count unchanged)."""
        if delivery.is_terminal:
            return delivery
        updated = delivery.model_copy(
            update={
                "status": DeliveryStatus.FAILED,
                "next_retry_at": None,
                "claimed_at": None,
                "error_message": reason,
                "updated_at": now,
            }
        )
        await self._store.update(updated)
        return updated

    async def reclaim_stuck(self, claimed_before: datetime) -> int:
        return await self._store.reclaim_stuck(claimed_before)

    async def history(self, subscription_id: UUID, **kwargs) -> tuple[List[WebhookDelivery], int]:
        return await self._store.list_by_subscription(subscription_id, **kwargs)
