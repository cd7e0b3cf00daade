"""Domain services exports."""

from lumepay_webhooks.services.dispatcher import WebhookDispatcher
from lumepay_webhooks.services.ledger import DeliveryLedger
from lumepay_webhooks.services.notifier import WebhookNotifier
from lumepay_webhooks.services.retry import RetryScheduler, SweepStats
from lumepay_webhooks.services.subscriptions import SubscriptionRegistry

__all__ = [
    "DeliveryLedger",
    "RetryScheduler",
    "SubscriptionRegistry",
    "SweepStats",
    "WebhookDispatcher",
    "WebhookNotifier",
]
