"""Subscription registry: merchant webhook endpoints and their health."""
from __future__ import annotations

from datetime import datetime
from typing import List, Sequence
from uuid import UUID

import structlog

from lumepay_webhooks.core.exceptions import InvalidSubscriptionError
from lumepay_webhooks.domain.webhooks import WebhookEventType, WebhookSubscription
from lumepay_webhooks.repositories.protocols import SubscriptionStore
from lumepay_webhooks.signing import generate_secret

logger = structlog.get_logger(__name__)


def _normalize_events(events: Sequence[WebhookEventType | str]) -> list[WebhookEventType]:
    try:
        normalized = [WebhookEventType(e) for e in events]
    except ValueError as exc:
        raise InvalidSubscriptionError(str(exc)) from exc
    normalized = list(dict.fromkeys(normalized))
    if not normalized:
        raise InvalidSubscriptionError("events must be a non-empty list")
    return normalized


def _validate_url(url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        raise InvalidSubscriptionError("url must be an http(s) URL")
    return url


class SubscriptionRegistry:
    def __init__(self, store: SubscriptionStore, *, secret_min_length: int = 16):
        self._store = store
        self._secret_min_length = secret_min_length

    def _checked_secret(self, secret: str) -> str:
        if len(secret) < self._secret_min_length:
            raise InvalidSubscriptionError(
                f"secret must be at least {self._secret_min_length} characters"
            )
        return secret

    async def create(
        self,
        *,
        merchant: str,
        url: str,
        events: Sequence[WebhookEventType | str],
        secret: str | None = None,
    ) -> WebhookSubscription:
        subscription = await self._store.create(
            merchant=merchant,
            url=_validate_url(url),
            events=_normalize_events(events),
            secret=self._checked_secret(secret) if secret is not None else generate_secret(),
        )
        logger.info(
            "webhook subscription created",
            subscription_id=str(subscription.id),
            merchant=merchant,
        )
        return subscription

    async def find_by_id(self, subscription_id: UUID) -> WebhookSubscription | None:
        return await self._store.get(subscription_id)

    async def get(self, merchant: str, subscription_id: UUID) -> WebhookSubscription:
        return await self._store.get_for_merchant(merchant, subscription_id)

    async def list_for_merchant(
        self, merchant: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookSubscription], int]:
        return await self._store.list_by_merchant(merchant, limit=limit, offset=offset)

    async def update(
        self,
        merchant: str,
        subscription_id: UUID,
        *,
        url: str | None = None,
        events: Sequence[WebhookEventType | str] | None = None,
        secret: str | None = None,
        is_active: bool | None = None,
    ) -> WebhookSubscription:
        """Partial update. An empty-string ``secret`` rotates to a generated one."""
        if secret == "":
            secret = generate_secret()
        elif secret is not None:
            secret = self._checked_secret(secret)
        subscription = await self._store.update(
            merchant,
            subscription_id,
            url=_validate_url(url) if url is not None else None,
            events=_normalize_events(events) if events is not None else None,
            secret=secret,
            is_active=is_active,
        )
        logger.info("webhook subscription updated", subscription_id=str(subscription_id))
        return subscription

    async def delete(self, merchant: str, subscription_id: UUID) -> None:
        await self._store.delete(merchant, subscription_id)
        logger.info("webhook subscription deleted", subscription_id=str(subscription_id))

    async def regenerate_secret(self, merchant: str, subscription_id: UUID) -> WebhookSubscription:
        """Replace the signing secret; the previous one stops working immediately."""
        subscription = await self._store.update(
            merchant, subscription_id, secret=generate_secret()
        )
        logger.info("webhook secret regenerated", subscription_id=str(subscription_id))
        return subscription

    async def find_active_for_event(
        self, merchant: str, event_type: WebhookEventType
    ) -> List[WebhookSubscription]:
        return await self._store.list_active_matching(merchant, event_type)

    async def record_outcome(self, subscription_id: UUID, *, success: bool, at: datetime) -> None:
        """Reset the failure counter on success, increment it on failure."""
        await self._store.record_outcome(subscription_id, success=success, at=at)
