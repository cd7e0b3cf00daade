from __future__ import annotations

import asyncio
import uuid

import pytest

from lumepay_webhooks.domain.webhooks import DeliveryStatus
from lumepay_webhooks.main import create_app
from lumepay_webhooks.middleware.trace import REQUEST_ID_HEADER, TRACE_ID_HEADER
from lumepay_webhooks.services.dependencies import MERCHANT_HEADER, WEBHOOK_SERVICES_KEY
from lumepay_webhooks.signing import SIGNATURE_HEADER, verify_signature
from tests.conftest import MERCHANT, UNREACHABLE_URL


def make_headers(merchant: str = MERCHANT) -> dict[str, str]:
    return {MERCHANT_HEADER: merchant}


@pytest.fixture
async def service_client(aiohttp_client, subscription_store, delivery_store):
    app = create_app(
        subscriptions=subscription_store,
        deliveries=delivery_store,
        run_worker=False,
    )
    return await aiohttp_client(app)


async def _create(client, url: str, **extra) -> dict:
    resp = await client.post(
        "/api/v1/webhooks",
        json={"url": url, "events": ["payment_intent.confirmed"], **extra},
        headers=make_headers(),
    )
    assert resp.status == 201, await resp.text()
    return await resp.json()


async def test_health(service_client):
    resp = await service_client.get("/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


async def test_create_returns_secret_once(service_client):
    created = await _create(service_client, "https://merchant.example/hook")
    assert len(created["secret"]) == 64
    assert created["is_active"] is True
    assert created["failure_count"] == 0

    resp = await service_client.get(
        f"/api/v1/webhooks/{created['id']}", headers=make_headers()
    )
    assert resp.status == 200
    assert "secret" not in await resp.json()

    resp = await service_client.get("/api/v1/webhooks", headers=make_headers())
    listing = await resp.json()
    assert listing["total"] == 1
    assert "secret" not in listing["webhooks"][0]


async def test_create_with_custom_secret(service_client):
    secret = "k" * 40
    created = await _create(service_client, "https://merchant.example/hook", secret=secret)
    assert created["secret"] == secret


async def test_create_rejects_invalid_input(service_client):
    resp = await service_client.post(
        "/api/v1/webhooks",
        json={"url": "https://merchant.example/hook", "events": ["payment_intent.refunded"]},
        headers=make_headers(),
    )
    assert resp.status == 400

    resp = await service_client.post(
        "/api/v1/webhooks",
        json={"url": "https://merchant.example/hook", "events": []},
        headers=make_headers(),
    )
    assert resp.status == 400

    resp = await service_client.post(
        "/api/v1/webhooks",
        json={"url": "ftp://merchant.example/hook", "events": ["payment_intent.confirmed"]},
        headers=make_headers(),
    )
    assert resp.status == 400

    resp = await service_client.post(
        "/api/v1/webhooks", data="not json", headers=make_headers()
    )
    assert resp.status == 400


async def test_merchant_header_required(service_client):
    resp = await service_client.get("/api/v1/webhooks")
    assert resp.status == 401


async def test_other_merchant_cannot_see_subscription(service_client):
    created = await _create(service_client, "https://merchant.example/hook")
    other = make_headers("merchant-2")

    resp = await service_client.get(f"/api/v1/webhooks/{created['id']}", headers=other)
    assert resp.status == 404
    resp = await service_client.delete(f"/api/v1/webhooks/{created['id']}", headers=other)
    assert resp.status == 404

    resp = await service_client.get("/api/v1/webhooks", headers=other)
    assert (await resp.json())["total"] == 0


async def test_update_subscription(service_client):
    created = await _create(service_client, "https://merchant.example/hook")

    resp = await service_client.put(
        f"/api/v1/webhooks/{created['id']}",
        json={
            "url": "https://merchant.example/v2",
            "events": ["payment_intent.failed", "payment_intent.expired"],
            "is_active": False,
        },
        headers=make_headers(),
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["url"] == "https://merchant.example/v2"
    assert body["events"] == ["payment_intent.failed", "payment_intent.expired"]
    assert body["is_active"] is False
    assert "secret" not in body


async def test_update_with_empty_secret_returns_new_secret(service_client, subscription_store):
    created = await _create(service_client, "https://merchant.example/hook")

    resp = await service_client.put(
        f"/api/v1/webhooks/{created['id']}",
        json={"secret": ""},
        headers=make_headers(),
    )
    assert resp.status == 200
    body = await resp.json()
    stored = subscription_store.items[uuid.UUID(created["id"])]
    assert body["secret"] == stored.secret
    assert body["secret"] != created["secret"]
    assert len(body["secret"]) == 64

    resp = await service_client.get(
        f"/api/v1/webhooks/{created['id']}", headers=make_headers()
    )
    assert "secret" not in await resp.json()


async def test_update_unknown_subscription(service_client):
    resp = await service_client.put(
        f"/api/v1/webhooks/{uuid.uuid4()}",
        json={"is_active": False},
        headers=make_headers(),
    )
    assert resp.status == 404


async def test_regenerate_secret(service_client):
    created = await _create(service_client, "https://merchant.example/hook")

    resp = await service_client.post(
        f"/api/v1/webhooks/{created['id']}/regenerate-secret", headers=make_headers()
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["id"] == created["id"]
    assert body["secret"] != created["secret"]
    assert len(body["secret"]) == 64


async def test_delete_subscription(service_client):
    created = await _create(service_client, "https://merchant.example/hook")

    resp = await service_client.delete(
        f"/api/v1/webhooks/{created['id']}", headers=make_headers()
    )
    assert resp.status == 204

    resp = await service_client.get(
        f"/api/v1/webhooks/{created['id']}", headers=make_headers()
    )
    assert resp.status == 404


async def test_invalid_webhook_id(service_client):
    resp = await service_client.get("/api/v1/webhooks/not-a-uuid", headers=make_headers())
    assert resp.status == 400


async def test_event_is_delivered_signed(service_client, receiver):
    created = await _create(service_client, receiver.url)

    resp = await service_client.post(
        "/internal/v1/events",
        json={
            "merchant": MERCHANT,
            "type": "payment_intent.confirmed",
            "data": {"id": "pi_1", "amount": 1000, "currency": "usd"},
        },
    )
    assert resp.status == 202
    assert (await resp.json()) == {"accepted": True, "type": "payment_intent.confirmed"}

    received = await asyncio.wait_for(receiver.queue.get(), timeout=3.0)
    assert received.headers["X-Webhook-Event"] == "payment_intent.confirmed"
    assert verify_signature(received.raw, created["secret"], received.headers[SIGNATURE_HEADER])
    assert received.body["data"] == {"id": "pi_1", "amount": 1000, "currency": "usd"}
    assert received.body["id"].startswith("evt_")


async def test_event_rejects_unknown_type(service_client):
    resp = await service_client.post(
        "/internal/v1/events",
        json={"merchant": MERCHANT, "type": "payment_intent.refunded", "data": {}},
    )
    assert resp.status == 400


async def test_delivery_history(service_client):
    ok = await _create(service_client, UNREACHABLE_URL)
    services = service_client.server.app[WEBHOOK_SERVICES_KEY]

    await services.notifier.notify(MERCHANT, "payment_intent.confirmed", {"id": "pi_2"})

    resp = await service_client.get(
        f"/api/v1/webhooks/{ok['id']}/deliveries", headers=make_headers()
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["total"] == 1
    delivery = body["deliveries"][0]
    assert delivery["status"] == "pending"
    assert delivery["attempts"] == 1
    assert delivery["next_retry_at"] is not None
    assert "claimed_at" not in delivery

    resp = await service_client.get(
        f"/api/v1/webhooks/{ok['id']}/deliveries",
        params={"status": DeliveryStatus.DELIVERED.value},
        headers=make_headers(),
    )
    assert (await resp.json())["total"] == 0

    resp = await service_client.get(
        f"/api/v1/webhooks/{ok['id']}/deliveries",
        params={"status": "bogus"},
        headers=make_headers(),
    )
    assert resp.status == 400


async def test_responses_carry_trace_headers(service_client):
    trace_id = str(uuid.uuid4())
    resp = await service_client.get("/health", headers={TRACE_ID_HEADER: trace_id})
    assert resp.headers[TRACE_ID_HEADER] == trace_id
    assert REQUEST_ID_HEADER in resp.headers

    resp = await service_client.get("/api/v1/webhooks")
    assert resp.status == 401
    assert TRACE_ID_HEADER in resp.headers
