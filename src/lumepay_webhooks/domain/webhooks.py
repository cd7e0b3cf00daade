"""Webhook domain primitives."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class WebhookEventType(str, Enum):
    """Catalog of payment-intent events merchants can subscribe to."""

    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_CONFIRMED = "payment_intent.confirmed"
    PAYMENT_INTENT_FAILED = "payment_intent.failed"
    PAYMENT_INTENT_EXPIRED = "payment_intent.expired"


class DeliveryStatus(str, Enum):
    """Delivery record states.

    ``pending`` means retry-eligible (``next_retry_at`` is set); ``delivered``
    and ``failed`` are terminal.
    """

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEvent(BaseModel):
    """Immutable notification sent to subscribers."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: WebhookEventType
    data: dict[str, Any] = Field(default_factory=dict)
    created: int

    def to_payload(self) -> dict[str, Any]:
        """Wire representation with a stable field order."""
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "created": self.created,
        }


class WebhookSubscription(BaseModel):
    id: UUID
    merchant: str
    url: str
    events: list[WebhookEventType] = Field(default_factory=list)
    # never serialized; the API returns it explicitly on create/rotate only
    secret: str = Field(repr=False, exclude=True)
    is_active: bool = True
    failure_count: int = 0
    last_triggered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def wants(self, event_type: WebhookEventType) -> bool:
        return self.is_active and event_type in self.events


class WebhookDelivery(BaseModel):
    id: UUID
    subscription_id: UUID
    event_id: str
    event_type: WebhookEventType
    event_data: dict[str, Any] = Field(default_factory=dict)
    event_created: int
    status: DeliveryStatus
    attempts: int = 0
    response_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None
    claimed_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status is not DeliveryStatus.PENDING

    def to_event(self) -> WebhookEvent:
        """Rebuild the event this record delivers (same id on every retry)."""
        return WebhookEvent(
            id=self.event_id,
            type=self.event_type,
            data=self.event_data,
            created=self.event_created,
        )


class DeliveryOutcome(BaseModel):
    """Result of a single delivery attempt.

    ``skipped`` outcomes never reached the network (inactive subscription or
    unsubscribed event type) and must not be retried.
    """

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    skipped: bool = False

    @classmethod
    def skip(cls, reason: str) -> "DeliveryOutcome":
        return cls(success=False, error_message=reason, skipped=True)
