"""Webhook repositories (subscriptions + delivery ledger)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from lumepay_webhooks.core.exceptions import NotFoundError
from lumepay_webhooks.domain.webhooks import (
    DeliveryStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookEventType,
    WebhookSubscription,
)
from lumepay_webhooks.repositories.base import BaseRepository, affected_rows


class WebhookSubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(dict(record))

    async def create(
        self,
        *,
        merchant: str,
        url: str,
        events: list[WebhookEventType],
        secret: str,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_subscriptions (merchant, url, events, secret, is_active)
            VALUES ($1, $2, $3::text[], $4, true)
            RETURNING *
            """,
            merchant,
            url,
            [e.value for e in events],
            secret,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1",
            subscription_id,
        )
        return self._to_model(record) if record is not None else None

    async def get_for_merchant(self, merchant: str, subscription_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE merchant = $1 AND id = $2",
            merchant,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def list_by_merchant(
        self, merchant: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_subscriptions
            WHERE merchant = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            merchant,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(WebhookSubscription.model_validate(rec_dict))
        if total is None:
            total = await self._count_by_merchant(merchant)
        return items, total

    async def _count_by_merchant(self, merchant: str) -> int:
        record = await self._fetchrow(
            "SELECT COUNT(*) AS total FROM webhook_subscriptions WHERE merchant = $1",
            merchant,
        )
        return int(record["total"]) if record else 0

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
        record = await self._fetchrow(
            """
            UPDATE webhook_subscriptions
            SET url = COALESCE($3, url),
                events = COALESCE($4::text[], events),
                secret = COALESCE($5, secret),
                is_active = COALESCE($6, is_active),
                updated_at = now()
            WHERE merchant = $1 AND id = $2
            RETURNING *
            """,
            merchant,
            subscription_id,
            url,
            [e.value for e in events] if events is not None else None,
            secret,
            is_active,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def delete(self, merchant: str, subscription_id: UUID) -> None:
        # deliveries go with it (ON DELETE CASCADE)
        record = await self._fetchrow(
            """
            DELETE FROM webhook_subscriptions
            WHERE merchant = $1 AND id = $2
            RETURNING id
            """,
            merchant,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")

    async def list_active_matching(
        self, merchant: str, event_type: WebhookEventType
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE merchant = $1
              AND is_active = true
              AND $2 = ANY(events)
            ORDER BY created_at ASC
            """,
            merchant,
            event_type.value,
        )
        return [self._to_model(r) for r in records]

    async def record_outcome(self, subscription_id: UUID, *, success: bool, at: datetime) -> None:
        await self._execute(
            """
            UPDATE webhook_subscriptions
            SET failure_count = CASE WHEN $2 THEN 0 ELSE failure_count + 1 END,
                last_triggered_at = $3,
                updated_at = now()
            WHERE id = $1
            """,
            subscription_id,
            success,
            at,
        )


class WebhookDeliveryRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookDelivery:
        return WebhookDelivery.model_validate(WebhookDeliveryRepository._normalize(dict(record)))

    @staticmethod
    def _normalize(payload: dict[str, Any]) -> dict[str, Any]:
        value = payload.get("event_data")
        if isinstance(value, str):
            payload["event_data"] = json.loads(value)
        return payload

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
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                subscription_id,
                event_id,
                event_type,
                event_data,
                event_created,
                status,
                attempts,
                response_code,
                response_body,
                error_message,
                next_retry_at,
                delivered_at
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11, $12)
            RETURNING *
            """,
            subscription_id,
            event.id,
            event.type.value,
            json.dumps(event.data),
            event.created,
            status.value,
            attempts,
            response_code,
            response_body,
            error_message,
            next_retry_at,
            delivered_at,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE id = $1",
            delivery_id,
        )
        return self._to_model(record) if record is not None else None

    async def claim_due(
        self, now: datetime, *, max_attempts: int, limit: int
    ) -> List[WebhookDelivery]:
        """
        Atomically claim retry-eligible deliveries whose ``next_retry_at`` has passed.

        Uses row-level locking (FOR UPDATE SKIP LOCKED) and stamps ``claimed_at``
        so concurrent sweeps never process the same delivery.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                records = await conn.fetch(
                    """
                    WITH cte AS (
                        SELECT id
                        FROM webhook_deliveries
                        WHERE status = 'pending'
                          AND claimed_at IS NULL
                          AND attempts < $2
                          AND next_retry_at <= $1
                        ORDER BY next_retry_at ASC
                        FOR UPDATE SKIP LOCKED
                        LIMIT $3
                    )
                    UPDATE webhook_deliveries d
                    SET claimed_at = $1,
                        updated_at = now()
                    FROM cte
                    WHERE d.id = cte.id
                    RETURNING d.*
                    """,
                    now,
                    max_attempts,
                    limit,
                )
        return [self._to_model(r) for r in records]

    async def update(self, delivery: WebhookDelivery) -> bool:
        """Persist a state transition; terminal records are left untouched.

        Returns ``False`` when the stored row was no longer ``pending``.
        """
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET status = $2,
                attempts = GREATEST(attempts, $3),
                response_code = $4,
                response_body = $5,
                error_message = $6,
                next_retry_at = $7,
                delivered_at = $8,
                claimed_at = NULL,
                updated_at = now()
            WHERE id = $1
              AND status = 'pending'
            """,
            delivery.id,
            delivery.status.value,
            delivery.attempts,
            delivery.response_code,
            delivery.response_body,
            delivery.error_message,
            delivery.next_retry_at,
            delivery.delivered_at,
        )
        return affected_rows(result) > 0

    async def reclaim_stuck(self, claimed_before: datetime) -> int:
        """Release claims left by a sweep that never finished (e.g. after a crash)."""
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET claimed_at = NULL,
                updated_at = now()
            WHERE status = 'pending'
              AND claimed_at < $1
            """,
            claimed_before,
        )
        return affected_rows(result)

    async def list_by_subscription(
        self,
        subscription_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        where = ["subscription_id = $1"]
        values: list[Any] = [subscription_id]
        idx = 2
        if status is not None:
            where.append(f"status = ${idx}")
            values.append(status.value)
            idx += 1
        where_sql = " AND ".join(where)
        query = f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
        """
        values.extend([limit, offset])
        records = await self._fetch(query, *values)
        items: List[WebhookDelivery] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(WebhookDelivery.model_validate(self._normalize(rec_dict)))
        if total is None:
            total = await self._count_by_subscription(subscription_id, status=status)
        return items, total

    async def _count_by_subscription(
        self, subscription_id: UUID, *, status: DeliveryStatus | None = None
    ) -> int:
        if status is None:
            record = await self._fetchrow(
                "SELECT COUNT(*) AS total FROM webhook_deliveries WHERE subscription_id = $1",
                subscription_id,
            )
        else:
            record = await self._fetchrow(
                "SELECT COUNT(*) AS total FROM webhook_deliveries "
                "WHERE subscription_id = $1 AND status = $2",
                subscription_id,
                status.value,
            )
        return int(record["total"]) if record else 0
