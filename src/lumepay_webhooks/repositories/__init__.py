"""Repository package exports."""

from lumepay_webhooks.repositories.protocols import DeliveryStore, SubscriptionStore
from lumepay_webhooks.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)

__all__ = [
    "DeliveryStore",
    "SubscriptionStore",
    "WebhookDeliveryRepository",
    "WebhookSubscriptionRepository",
]
