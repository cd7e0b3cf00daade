"""Storage interfaces consumed by the registry, ledger and scheduler."""
from __future__ import annotations

from datetime import datetime
from typing import List, Protocol, Tuple
from uuid import UUID

from lumepay_webhooks.domain.webhooks import (
    DeliveryStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookEventType,
    WebhookSubscription,
)


class SubscriptionStore(Protocol):
    async def create(
        self,
        *,
        merchant: str,
        url: str,
        events: list[WebhookEventType],
        secret: str,
    ) -> WebhookSubscription: ...

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None: ...

    async def get_for_merchant(
        self, merchant: str, subscription_id: UUID
    ) -> WebhookSubscription: ...

    async def list_by_merchant(
        self, merchant: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]: ...

    async def update(
        self,
        merchant: str,
        subscription_id: UUID,
        *,
        url: str | None = None,
        events: list[WebhookEventType] | None = None,
        secret: str | None = None,
        is_active: bool | None = None,
    ) -> WebhookSubscription: ...

    async def delete(self, merchant: str, subscription_id: UUID) -> None: ...

    async def list_active_matching(
        self, merchant: str, event_type: WebhookEventType
    ) -> List[WebhookSubscription]: ...

    async def record_outcome(
        self, subscription_id: UUID, *, success: bool, at: datetime
    ) -> None: ...


class DeliveryStore(Protocol):
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
    ) -> WebhookDelivery: ...

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None: ...

    async def claim_due(
        self, now: datetime, *, max_attempts: int, limit: int
    ) -> List[WebhookDelivery]: ...

    async def update(self, delivery: WebhookDelivery) -> bool: ...

    async def reclaim_stuck(self, claimed_before: datetime) -> int: ...

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]: ...
