"""In-memory implementations of the storage protocols."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Tuple
from uuid import UUID, uuid4

from lumepay_webhooks.core.exceptions import NotFoundError, RepositoryError
from lumepay_webhooks.domain.webhooks import (
    DeliveryStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookEventType,
    WebhookSubscription,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDeliveryStore:
    def __init__(self) -> None:
        self.items: dict[UUID, WebhookDelivery] = {}
        self.fail_writes = False
        self.claim_calls = 0

    def _check_writable(self) -> None:
        if self.fail_writes:
            raise RepositoryError("database unavailable")

    async def record(
        self,
        *,
        subscription_id: UUID,
        event: WebhookEvent,
        status: DeliveryStatus,
        attempts: int,
        response_code: int | None = None,
        response_body: str | None = None,
        error_message: str | None = None,
        next_retry_at: datetime | None = None,
        delivered_at: datetime | None = None,
    ) -> WebhookDelivery:
        self._check_writable()
        now = _now()
        delivery = WebhookDelivery(
            id=uuid4(),
            subscription_id=subscription_id,
            event_id=event.id,
            event_type=event.type,
            event_data=event.data,
            event_created=event.created,
            status=status,
            attempts=attempts,
            response_code=response_code,
            response_body=response_body,
            error_message=error_message,
            next_retry_at=next_retry_at,
            delivered_at=delivered_at,
            created_at=now,
            updated_at=now,
        )
        self.items[delivery.id] = delivery
        return delivery.model_copy()

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None:
        delivery = self.items.get(delivery_id)
        return delivery.model_copy() if delivery else None

    async def claim_due(
        self, now: datetime, *, max_attempts: int, limit: int
    ) -> List[WebhookDelivery]:
        self.claim_calls += 1
        due = [
            d
            for d in self.items.values()
            if d.status is DeliveryStatus.PENDING
            and d.claimed_at is None
            and d.attempts < max_attempts
            and d.next_retry_at is not None
            and d.next_retry_at <= now
        ]
        due.sort(key=lambda d: d.next_retry_at)
        claimed = []
        for d in due[:limit]:
            stamped = d.model_copy(update={"claimed_at": now})
            self.items[d.id] = stamped
            claimed.append(stamped.model_copy())
        return claimed

    async def update(self, delivery: WebhookDelivery) -> bool:
        self._check_writable()
        stored = self.items.get(delivery.id)
        if stored is None or stored.status is not DeliveryStatus.PENDING:
            return False
        self.items[delivery.id] = delivery.model_copy(
            update={"claimed_at": None, "attempts": max(stored.attempts, delivery.attempts)}
        )
        return True

    async def reclaim_stuck(self, claimed_before: datetime) -> int:
        count = 0
        for key, d in list(self.items.items()):
            if (
                d.status is DeliveryStatus.PENDING
                and d.claimed_at is not None
                and d.claimed_at < claimed_before
            ):
                self.items[key] = d.model_copy(update={"claimed_at": None})
                count += 1
        return count

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        matching = [
            d
            for d in self.items.values()
            if d.subscription_id == subscription_id and (status is None or d.status is status)
        ]
        matching.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy() for d in matching[offset : offset + limit]], len(matching)

    def delete_for_subscription(self, subscription_id: UUID) -> None:
        for key in [k for k, d in self.items.items() if d.subscription_id == subscription_id]:
            del self.items[key]

    def for_subscription(self, subscription_id: UUID) -> list[WebhookDelivery]:
        return [d for d in self.items.values() if d.subscription_id == subscription_id]


class InMemorySubscriptionStore:
    def __init__(self, deliveries: InMemoryDeliveryStore | None = None) -> None:
        self.items: dict[UUID, WebhookSubscription] = {}
        self._deliveries = deliveries
        self.fail_writes = False

    async def create(
        self,
        *,
        merchant: str,
        url: str,
        events: list[WebhookEventType],
        secret: str,
    ) -> WebhookSubscription:
        now = _now()
        sub = WebhookSubscription(
            id=uuid4(),
            merchant=merchant,
            url=url,
            events=list(events),
            secret=secret,
            created_at=now,
            updated_at=now,
        )
        self.items[sub.id] = sub
        return sub.model_copy()

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None:
        sub = self.items.get(subscription_id)
        return sub.model_copy() if sub else None

    async def get_for_merchant(self, merchant: str, subscription_id: UUID) -> WebhookSubscription:
        sub = self.items.get(subscription_id)
        if sub is None or sub.merchant != merchant:
            raise NotFoundError("Webhook subscription not found")
        return sub.model_copy()

    async def list_by_merchant(
        self, merchant: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]:
        matching = [s for s in self.items.values() if s.merchant == merchant]
        matching.sort(key=lambda s: s.created_at, reverse=True)
        return [s.model_copy() for s in matching[offset : offset + limit]], len(matching)

    async def update(
        self,
        merchant: str,
        subscription_id: UUID,
        *,
        url: str | None = None,
        events: list[WebhookEventType] | None = None,
        secret: str | None = None,
        is_active: bool | None = None,
    ) -> WebhookSubscription:
        current = await self.get_for_merchant(merchant, subscription_id)
        changes = {
            key: value
            for key, value in {
                "url": url,
                "events": events,
                "secret": secret,
                "is_active": is_active,
            }.items()
            if value is not None
        }
        changes["updated_at"] = _now()
        updated = current.model_copy(update=changes)
        self.items[subscription_id] = updated
        return updated.model_copy()

    async def delete(self, merchant: str, subscription_id: UUID) -> None:
        await self.get_for_merchant(merchant, subscription_id)
        del self.items[subscription_id]
        if self._deliveries is not None:
            self._deliveries.delete_for_subscription(subscription_id)

    async def list_active_matching(
        self, merchant: str, event_type: WebhookEventType
    ) -> List[WebhookSubscription]:
        return [
            s.model_copy()
            for s in sorted(self.items.values(), key=lambda s: s.created_at)
            if s.merchant == merchant and s.is_active and event_type in s.events
        ]

    async def record_outcome(self, subscription_id: UUID, *, success: bool, at: datetime) -> None:
        if self.fail_writes:
            raise RepositoryError("database unavailable")
        sub = self.items.get(subscription_id)
        if sub is None:
            return
        self.items[subscription_id] = sub.model_copy(
            update={
                "failure_count": 0 if success else sub.failure_count + 1,
                "last_triggered_at": at,
            }
        )


def make_subscription(
    url: str,
    *,
    merchant: str = "merchant-1",
    events: list[WebhookEventType] | None = None,
    secret: str = "s" * 32,
    is_active: bool = True,
) -> WebhookSubscription:
    now = _now()
    return WebhookSubscription(
        id=uuid4(),
        merchant=merchant,
        url=url,
        events=events or [WebhookEventType.PAYMENT_INTENT_CONFIRMED],
        secret=secret,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
