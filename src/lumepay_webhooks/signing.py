"""HMAC-SHA256 signatures for outbound webhook bodies.

The signature covers the exact body bytes sent over the wire and is carried
in the ``X-Webhook-Signature`` header as lowercase hex. Receivers must
recompute it over the raw request body and compare with
:func:`hmac.compare_digest` (see :func:`verify_signature`); a plain ``==``
leaks timing information.
"""
from __future__ import annotations

import hmac
import json
import secrets
from hashlib import sha256

from lumepay_webhooks.domain.webhooks import WebhookEvent

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"

SECRET_BYTES = 32


def serialize_event(event: WebhookEvent) -> bytes:
    """Canonical JSON body: fixed key order, no insignificant whitespace."""
    return json.dumps(event.to_payload(), separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()


def sign(event: WebhookEvent, secret: str) -> str:
    return sign_body(serialize_event(event), secret)


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a received signature."""
    return hmac.compare_digest(sign_body(body, secret), signature.strip().lower())


def generate_secret() -> str:
    """Random signing secret, hex-encoded (64 chars)."""
    return secrets.token_hex(SECRET_BYTES)
