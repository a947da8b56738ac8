"""
Stripe webhook normalizer.

Signatures are verified with ``stripe.Webhook.construct_event`` against
SUBMETER_STRIPE_WEBHOOK_SECRET. The user is identified through
``metadata.user_id`` on the subscription (or ``client_reference_id`` on a
Checkout Session).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

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


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_product(item: Dict[str, Any]) -> Optional[str]:
    price = item.get("price") or {}
    return price.get("product") or price.get("id")


class StripeNormalizer(EventNormalizer):
    provider = "stripe"

    def _verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        sig_header = lower_headers(headers).get("stripe-signature")
        if not sig_header:
            raise SignatureError("Stripe-Signature header missing", code="SMT-AUTH-002")
        secret = self.require_secret(self.settings.stripe_webhook_secret)
        try:
            stripe.Webhook.construct_event(
                body, sig_header, secret, tolerance=self.settings.webhook_tolerance_s
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(f"stripe signature rejected: {exc}") from exc
        except ValueError as exc:
            raise PayloadError(f"invalid stripe payload: {exc}") from exc

    def normalize(self, body, headers, query=None, verify=True) -> BillingEvent:
        if verify and self.verification_enabled:
            self._verify(body, headers)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PayloadError(f"invalid JSON: {exc}") from exc
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            raise PayloadError("stripe event without id/type")

        event_type = payload["type"]
        obj = ((payload.get("data") or {}).get("object")) or {}
        event = BillingEvent(
            provider=self.provider,
            event_id=payload["id"],
            event_type=EventType.UNHANDLED,
            provider_event_type=event_type,
            occurred_at=parse_timestamp(payload.get("created")),
            raw_payload=payload,
        )

        if event_type.startswith("customer.subscription."):
            self._fill_subscription(event, obj, payload)
        elif event_type in ("invoice.paid", "invoice.payment_failed"):
            self._fill_invoice(event, obj)
        elif event_type == "checkout.session.completed":
            self._fill_checkout(event, obj)
        return event

    def _fill_subscription(self, event: BillingEvent, obj: Dict[str, Any], payload: Dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        item = _first_item(obj)
        event.provider_subscription_id = obj.get("id")
        event.provider_customer_id = obj.get("customer")
        event.user_id = metadata.get("user_id")
        event.customer_email = metadata.get("email")
        event.plan = self.resolve_plan(_price_product(item), metadata)
        event.status = obj.get("status")
        # Newer API versions moved the period onto the subscription item
        event.period_start = parse_timestamp(obj.get("current_period_start") or item.get("current_period_start"))
        event.period_end = parse_timestamp(obj.get("current_period_end") or item.get("current_period_end"))

        if event.provider_event_type == "customer.subscription.created":
            event.event_type = EventType.SUBSCRIPTION_ACTIVATED
        elif event.provider_event_type == "customer.subscription.deleted":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = True
        elif event.provider_event_type == "customer.subscription.updated":
            previous = (payload.get("data") or {}).get("previous_attributes") or {}
            cancel_flag = bool(obj.get("cancel_at_period_end"))
            if cancel_flag and previous.get("cancel_at_period_end") is False:
                event.event_type = EventType.SUBSCRIPTION_CANCELLED
                event.cancel_immediately = False
            else:
                event.event_type = EventType.SUBSCRIPTION_UPDATED
                event.cancel_at_period_end = cancel_flag

    def _fill_invoice(self, event: BillingEvent, obj: Dict[str, Any]) -> None:
        parent = ((obj.get("parent") or {}).get("subscription_details")) or {}
        details = obj.get("subscription_details") or parent
        metadata = {**(obj.get("metadata") or {}), **(details.get("metadata") or {})}
        lines = (obj.get("lines") or {}).get("data") or []
        line = lines[0] if lines else {}
        period = line.get("period") or {}

        event.provider_subscription_id = obj.get("subscription") or details.get("subscription")
        event.provider_customer_id = obj.get("customer")
        event.customer_email = obj.get("customer_email")
        event.user_id = metadata.get("user_id")
        event.plan = self.resolve_plan(_price_product(line), metadata)
        event.period_start = parse_timestamp(period.get("start"))
        event.period_end = parse_timestamp(period.get("end"))

        if event.provider_event_type == "invoice.payment_failed":
            event.event_type = EventType.PAYMENT_FAILED
        elif obj.get("billing_reason") == "subscription_cycle":
            event.event_type = EventType.SUBSCRIPTION_RENEWED

    def _fill_checkout(self, event: BillingEvent, obj: Dict[str, Any]) -> None:
        if obj.get("mode") != "payment":
            return
        metadata = obj.get("metadata") or {}
        event.event_type = EventType.PAYMENT_SUCCEEDED
        event.provider_subscription_id = obj.get("payment_intent") or obj.get("id")
        event.provider_customer_id = obj.get("customer")
        event.customer_email = (obj.get("customer_details") or {}).get("email")
        event.user_id = obj.get("client_reference_id") or metadata.get("user_id")
        # A one-shot checkout can only buy the pay-per-use pack
        event.plan = self.resolve_plan(None, metadata) or PAY_PER_USE
