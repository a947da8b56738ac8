"""
Paddle Billing webhook normalizer.

``Paddle-Signature: ts=<unix>;h1=<hex>`` where h1 is HMAC-SHA256 of
``<ts>:<raw body>`` keyed with the notification secret. Several h1 values
may be present while a secret is being rotated.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from submeter.models.events import BillingEvent, EventType
from submeter.services.plan_catalog import PAY_PER_USE
from submeter.services.providers.base import (
    EventNormalizer,
    PayloadError,
    SignatureError,
    lower_headers,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_ACTIVATED = {"subscription.created", "subscription.activated"}
_STATUS_UPDATES = {"subscription.past_due": "past_due", "subscription.paused": "paused"}


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    ts: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(";"):
        key, _, value = part.strip().partition("=")
        if key == "ts" and value.isdigit():
            ts = int(value)
        elif key == "h1" and value:
            signatures.append(value)
    return ts, signatures


class PaddleNormalizer(EventNormalizer):
    provider = "paddle"

    def _verify(self, body: bytes, headers) -> None:
        header = lower_headers(headers).get("paddle-signature")
        if not header:
            raise SignatureError("Paddle-Signature header missing", code="SMT-AUTH-002")
        secret = self.require_secret(self.settings.paddle_webhook_secret)
        ts, signatures = parse_signature_header(header)
        if ts is None or not signatures:
            raise SignatureError("Paddle-Signature header malformed")
        self.check_timestamp(ts)
        expected = hmac.new(
            secret.encode("utf-8"), f"{ts}:".encode("utf-8") + body, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise SignatureError("paddle signature mismatch")

    def normalize(self, body, headers, query=None, verify=True) -> BillingEvent:
        if verify and self.verification_enabled:
            self._verify(body, headers)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PayloadError(f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict) or not payload.get("event_id") or not payload.get("event_type"):
            raise PayloadError("paddle event without event_id/event_type")

        event_type = payload["event_type"]
        data: Dict[str, Any] = payload.get("data") or {}
        custom = data.get("custom_data") or {}
        items = data.get("items") or []
        price = (items[0].get("price") or {}) if items else {}

        event = BillingEvent(
            provider=self.provider,
            event_id=payload["event_id"],
            event_type=EventType.UNHANDLED,
            provider_event_type=event_type,
            provider_customer_id=data.get("customer_id"),
            user_id=custom.get("user_id"),
            customer_email=custom.get("email"),
            plan=self.resolve_plan(price.get("product_id") or price.get("id"), custom),
            status=data.get("status"),
            occurred_at=parse_timestamp(payload.get("occurred_at")),
            raw_payload=payload,
        )

        if event_type.startswith("subscription."):
            period = data.get("current_billing_period") or {}
            event.provider_subscription_id = data.get("id")
            event.period_start = parse_timestamp(period.get("starts_at"))
            event.period_end = parse_timestamp(period.get("ends_at"))
            scheduled = data.get("scheduled_change") or {}

            if event_type in _ACTIVATED:
                event.event_type = EventType.SUBSCRIPTION_ACTIVATED
            elif event_type == "subscription.canceled":
                event.event_type = EventType.SUBSCRIPTION_CANCELLED
                event.cancel_immediately = True
            elif event_type in _STATUS_UPDATES:
                event.event_type = EventType.SUBSCRIPTION_UPDATED
                event.status = _STATUS_UPDATES[event_type]
            elif event_type == "subscription.updated":
                if scheduled.get("action") == "cancel":
                    event.event_type = EventType.SUBSCRIPTION_CANCELLED
                    event.cancel_immediately = False
                else:
                    event.event_type = EventType.SUBSCRIPTION_UPDATED
                    event.cancel_at_period_end = False
        elif event_type.startswith("transaction."):
            period = data.get("billing_period") or {}
            event.period_start = parse_timestamp(period.get("starts_at"))
            event.period_end = parse_timestamp(period.get("ends_at"))
            subscription_id = data.get("subscription_id")

            if event_type == "transaction.payment_failed":
                event.event_type = EventType.PAYMENT_FAILED
                event.provider_subscription_id = subscription_id or data.get("id")
            elif event_type == "transaction.completed":
                if data.get("origin") == "subscription_recurring":
                    event.event_type = EventType.SUBSCRIPTION_RENEWED
                    event.provider_subscription_id = subscription_id
                elif not subscription_id:
                    event.event_type = EventType.PAYMENT_SUCCEEDED
                    event.provider_subscription_id = data.get("id")
                    event.plan = event.plan or PAY_PER_USE
                # The first charge of a subscription is covered by subscription.created
        return event
