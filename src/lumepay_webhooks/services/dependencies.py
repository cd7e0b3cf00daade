"""Service wiring and dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass

from aiohttp import ClientSession, web

from lumepay_webhooks.repositories.protocols import DeliveryStore, SubscriptionStore
from lumepay_webhooks.services.dispatcher import WebhookDispatcher
from lumepay_webhooks.services.ledger import DeliveryLedger
from lumepay_webhooks.services.notifier import WebhookNotifier
from lumepay_webhooks.services.retry import RetryScheduler
from lumepay_webhooks.services.subscriptions import SubscriptionRegistry
from lumepay_webhooks.settings import Settings

WEBHOOK_SERVICES_KEY = "webhook_services"

MERCHANT_HEADER = "X-Merchant-Id"


@dataclass
class WebhookServices:
    registry: SubscriptionRegistry
    ledger: DeliveryLedger
    dispatcher: WebhookDispatcher
    notifier: WebhookNotifier
    scheduler: RetryScheduler


def build_services(
    subscriptions: SubscriptionStore,
    deliveries: DeliveryStore,
    session: ClientSession,
    settings: Settings,
) -> WebhookServices:
    registry = SubscriptionRegistry(
        subscriptions, secret_min_length=settings.webhook_secret_min_length
    )
    ledger = DeliveryLedger(
        deliveries,
        max_attempts=settings.webhook_max_attempts,
        backoff_base_seconds=settings.webhook_backoff_base_seconds,
    )
    dispatcher = WebhookDispatcher(
        session,
        timeout_seconds=settings.webhook_request_timeout_seconds,
        response_body_limit=settings.webhook_response_body_limit,
        user_agent=settings.webhook_user_agent,
    )
    return WebhookServices(
        registry=registry,
        ledger=ledger,
        dispatcher=dispatcher,
        notifier=WebhookNotifier(registry, ledger, dispatcher),
        scheduler=RetryScheduler(
            registry,
            ledger,
            dispatcher,
            batch_size=settings.webhook_retry_batch_size,
            max_concurrency=settings.webhook_dispatch_max_concurrency,
        ),
    )


def get_services(request: web.Request) -> WebhookServices:
    services = request.app.get(WEBHOOK_SERVICES_KEY)
    if services is None:
        raise web.HTTPServiceUnavailable(text="Webhook services are not initialized")
    return services


def get_subscription_registry(request: web.Request) -> SubscriptionRegistry:
    return get_services(request).registry


def get_delivery_ledger(request: web.Request) -> DeliveryLedger:
    return get_services(request).ledger


def get_notifier(request: web.Request) -> WebhookNotifier:
    return get_services(request).notifier


def require_merchant(request: web.Request) -> str:
    """Merchant identity resolved by the API gateway from the caller's API key."""
    merchant = request.headers.get(MERCHANT_HEADER, "").strip()
    if not merchant:
        raise web.HTTPUnauthorized(reason=f"Header {MERCHANT_HEADER} is required")
    return merchant
