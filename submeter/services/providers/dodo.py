"""
Dodo Payments webhook normalizer.

Dodo signs deliveries with the Standard Webhooks scheme:

    webhook-id:        msg_...
    webhook-timestamp: <unix seconds>
    webhook-signature: v1,<base64> [v1,<base64> ...]

The signature is HMAC-SHA256 over ``<id>.<timestamp>.<raw body>`` keyed
with the base64-decoded part of the ``whsec_`` secret.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from typing import Any, Dict

from submeter.models.billing import utcnow
from submeter.models.events import BillingEvent, EventType
from submeter.services.plan_catalog import PAY_PER_USE
from submeter.services.providers.base import (
    EventNormalizer,
    PayloadError,
    SignatureError,
    body_digest,
    lower_headers,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "whsec_"

_STATUS_UPDATES = {
    "subscription.paused": "paused",
    "subscription.on_hold": "paused",
    "subscription.past_due": "past_due",
}


def decode_secret(secret: str) -> bytes:
    raw = secret[len(_SECRET_PREFIX):] if secret.startswith(_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError) as exc:
        raise SignatureError("dodo webhook secret is not valid base64") from exc


def sign(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Compute the ``v1,<base64>`` signature for one delivery."""
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(decode_secret(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


class DodoNormalizer(EventNormalizer):
    provider = "dodo"

    def _verify(self, body: bytes, headers: Dict[str, str]) -> None:
        msg_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signature = headers.get("webhook-signature")
        if not (msg_id and timestamp and signature):
            raise SignatureError("standard webhook headers missing", code="SMT-AUTH-002")
        secret = self.require_secret(self.settings.dodo_webhook_secret)
        if not timestamp.isdigit():
            raise SignatureError("webhook-timestamp is not an integer")
        self.check_timestamp(int(timestamp))

        expected = sign(secret, msg_id, timestamp, body)
        candidates = [s for s in signature.split(" ") if s.startswith("v1,")]
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise SignatureError("dodo signature mismatch")

    def normalize(self, body, headers, query=None, verify=True) -> BillingEvent:
        headers = lower_headers(headers)
        if verify and self.verification_enabled:
            self._verify(body, headers)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PayloadError(f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict) or not payload.get("type"):
            raise PayloadError("dodo event without type")

        event_type = payload["type"]
        data: Dict[str, Any] = payload.get("data") or {}
        metadata = data.get("metadata") or {}
        customer = data.get("customer") or {}
        billing = data.get("billing") or {}

        event = BillingEvent(
            provider=self.provider,
            event_id=headers.get("webhook-id") or body_digest(body),
            event_type=EventType.UNHANDLED,
            provider_event_type=event_type,
            provider_subscription_id=data.get("subscription_id"),
            provider_customer_id=customer.get("customer_id") or data.get("customer_id"),
            user_id=metadata.get("user_id"),
            customer_email=customer.get("email") or metadata.get("user_email"),
            plan=self.resolve_plan(data.get("product_id"), metadata),
            status=data.get("status"),
            period_start=parse_timestamp(data.get("current_period_start") or data.get("previous_billing_date")),
            period_end=parse_timestamp(
                data.get("current_period_end")
                or billing.get("current_period_end")
                or data.get("next_billing_date")
            ),
            occurred_at=parse_timestamp(payload.get("timestamp")),
            raw_payload=payload,
        )

        if event_type == "subscription.active":
            event.event_type = EventType.SUBSCRIPTION_ACTIVATED
        elif event_type == "subscription.renewed":
            event.event_type = EventType.SUBSCRIPTION_RENEWED
        elif event_type == "subscription.plan_changed":
            event.event_type = EventType.SUBSCRIPTION_UPDATED
        elif event_type in _STATUS_UPDATES:
            event.event_type = EventType.SUBSCRIPTION_UPDATED
            event.status = _STATUS_UPDATES[event_type]
        elif event_type == "subscription.cancelled":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = not (event.period_end and event.period_end > utcnow())
        elif event_type == "subscription.expired":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = True
        elif event_type in ("subscription.failed", "payment.failed"):
            event.event_type = EventType.PAYMENT_FAILED
        elif event_type == "payment.succeeded":
            if not event.provider_subscription_id:
                event.event_type = EventType.PAYMENT_SUCCEEDED
                event.provider_subscription_id = data.get("payment_id")
                event.plan = event.plan or PAY_PER_USE
        elif event_type == "refund.succeeded":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = True
            event.provider_subscription_id = event.provider_subscription_id or data.get("payment_id")
        return event
