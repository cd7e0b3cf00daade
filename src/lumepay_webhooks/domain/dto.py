"""Request payloads accepted by the HTTP API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, HttpUrl

from lumepay_webhooks.domain.webhooks import WebhookEventType


class SubscriptionCreateDTO(BaseModel):
    url: HttpUrl
    events: list[WebhookEventType] = Field(min_length=1)
    secret: str | None = None


class SubscriptionUpdateDTO(BaseModel):
    url: HttpUrl | None = None
    events: list[WebhookEventType] | None = Field(default=None, min_length=1)
    # empty string asks for a freshly generated secret
    secret: str | None = None
    is_active: bool | None = None


class EventNotifyDTO(BaseModel):
    merchant: str = Field(min_length=1)
    type: WebhookEventType
    data: dict[str, Any] = Field(default_factory=dict)
