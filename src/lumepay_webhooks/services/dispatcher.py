"""Single HTTP delivery attempt to a subscriber endpoint."""
from __future__ import annotations

import asyncio

import structlog
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout

from lumepay_webhooks.domain.webhooks import DeliveryOutcome, WebhookEvent, WebhookSubscription
from lumepay_webhooks.signing import EVENT_HEADER, SIGNATURE_HEADER, serialize_event, sign_body

logger = structlog.get_logger(__name__)


async def _read_prefix(resp: ClientResponse, limit: int) -> bytes:
    """Read at most ``limit`` bytes of the body; the remainder is never buffered."""
    raw = bytearray()
    while len(raw) < limit:
        chunk = await resp.content.read(limit - len(raw))
        if not chunk:
            break
        raw.extend(chunk)
    return bytes(raw)


def _decode(raw: bytes, charset: str | None) -> str:
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


class WebhookDispatcher:
    """POSTs signed events and classifies the result.

    Never raises for network problems: timeouts, connection and DNS errors
    and error statuses all come back as failed :class:`DeliveryOutcome`.
    Persistence is left to the caller.
    """

    def __init__(
        self,
        session: ClientSession,
        *,
        timeout_seconds: float = 10.0,
        response_body_limit: int = 2000,
        user_agent: str = "LumePay-Webhooks/1.0",
    ):
        self._session = session
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._timeout_seconds = timeout_seconds
        self._body_limit = response_body_limit
        self._user_agent = user_agent

    async def deliver(
        self, subscription: WebhookSubscription, event: WebhookEvent
    ) -> DeliveryOutcome:
        if not subscription.is_active:
            return DeliveryOutcome.skip("Webhook subscription is inactive")
        if event.type not in subscription.events:
            return DeliveryOutcome.skip("Event type not subscribed")

        body = serialize_event(event)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            EVENT_HEADER: event.type.value,
            SIGNATURE_HEADER: sign_body(body, subscription.secret),
        }
        try:
            async with self._session.post(
                subscription.url,
                data=body,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                raw = await _read_prefix(resp, self._body_limit * 4)
        except asyncio.TimeoutError:
            return DeliveryOutcome(
                success=False,
                error_message=f"Timed out after {self._timeout_seconds:g}s",
            )
        except ClientError as exc:
            return DeliveryOutcome(success=False, error_message=str(exc) or type(exc).__name__)

        snapshot = _decode(raw, resp.charset)[: self._body_limit] or None
        if status < 400:
            return DeliveryOutcome(success=True, status_code=status, response_body=snapshot)
        return DeliveryOutcome(
            success=False,
            status_code=status,
            response_body=snapshot,
            error_message=f"HTTP {status}",
        )
