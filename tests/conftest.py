from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import pytest
from aiohttp import ClientSession, web

from lumepay_webhooks.domain.webhooks import WebhookEventType
from lumepay_webhooks.services import (
    DeliveryLedger,
    RetryScheduler,
    SubscriptionRegistry,
    WebhookDispatcher,
    WebhookNotifier,
)
from tests.fakes import InMemoryDeliveryStore, InMemorySubscriptionStore

MERCHANT = "merchant-1"
CONFIRMED = WebhookEventType.PAYMENT_INTENT_CONFIRMED

# nothing listens on port 1; connections are refused immediately
UNREACHABLE_URL = "http://127.0.0.1:1/hook"


@dataclass
class ReceivedRequest:
    headers: dict[str, str]
    raw: bytes

    @property
    def body(self) -> dict:
        return json.loads(self.raw.decode("utf-8"))


@dataclass
class Receiver:
    """Local merchant endpoint; ``status``/``delay``/``body`` control its answers."""

    base_url: str = ""
    status: int = 200
    delay: float = 0.0
    body: str | None = None
    requests: list[ReceivedRequest] = field(default_factory=list)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)

    @property
    def url(self) -> str:
        return f"{self.base_url}/hook"


@pytest.fixture
async def receiver():
    state = Receiver()

    async def handler(request: web.Request) -> web.Response:
        received = ReceivedRequest(headers=dict(request.headers), raw=await request.read())
        state.requests.append(received)
        await state.queue.put(received)
        if state.delay:
            await asyncio.sleep(state.delay)
        text = state.body if state.body is not None else f"status {state.status}"
        return web.Response(status=state.status, text=text)

    app = web.Application()
    app.router.add_post("/hook", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    state.base_url = f"http://127.0.0.1:{port}"
    try:
        yield state
    finally:
        await runner.cleanup()


@pytest.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def delivery_store() -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore()


@pytest.fixture
def subscription_store(delivery_store) -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore(delivery_store)


@pytest.fixture
def registry(subscription_store) -> SubscriptionRegistry:
    return SubscriptionRegistry(subscription_store)


@pytest.fixture
def ledger(delivery_store) -> DeliveryLedger:
    return DeliveryLedger(delivery_store, max_attempts=3, backoff_base_seconds=60)


@pytest.fixture
def dispatcher(http_session) -> WebhookDispatcher:
    return WebhookDispatcher(http_session, timeout_seconds=2.0)


@pytest.fixture
def notifier(registry, ledger, dispatcher) -> WebhookNotifier:
    return WebhookNotifier(registry, ledger, dispatcher)


@pytest.fixture
def scheduler(registry, ledger, dispatcher) -> RetryScheduler:
    return RetryScheduler(registry, ledger, dispatcher, batch_size=50, max_concurrency=5)
