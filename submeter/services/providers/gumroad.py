"""
Gumroad Ping normalizer.

Gumroad posts ``application/x-www-form-urlencoded`` bodies and does not
sign them. The endpoint URL registered with Gumroad carries a shared
token (``?token=...``) that is compared in constant time. The buyer's
user id travels as ``url_params[user_id]`` on the product link.
"""

from __future__ import annotations

import hmac
import logging
from typing import Dict, Optional
from urllib.parse import parse_qsl

from submeter.models.events import BillingEvent, EventType
from submeter.services.plan_catalog import PAY_PER_USE, RECURRING_PLANS
from submeter.services.providers.base import (
    EventNormalizer,
    PayloadError,
    SignatureError,
    body_digest,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_RECURRENCE_PLANS = {"monthly": "monthly", "yearly": "yearly"}


def _truthy(value: Optional[str]) -> bool:
    return (value or "").lower() in ("true", "1", "yes")


class GumroadNormalizer(EventNormalizer):
    provider = "gumroad"

    def _verify(self, query) -> None:
        token = (query or {}).get("token")
        if not token:
            raise SignatureError("gumroad token missing", code="SMT-AUTH-002")
        expected = self.require_secret(self.settings.gumroad_webhook_token)
        if not hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8")):
            raise SignatureError("gumroad token mismatch")

    def normalize(self, body, headers, query=None, verify=True) -> BillingEvent:
        if verify and self.verification_enabled:
            self._verify(query)

        try:
            form: Dict[str, str] = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise PayloadError(f"invalid form body: {exc}") from exc
        if not form:
            raise PayloadError("empty gumroad body")

        resource = form.get("resource_name") or "sale"
        product = form.get("product_permalink") or form.get("permalink") or form.get("product_id")
        plan = self.resolve_plan(product, form) or _RECURRENCE_PLANS.get(form.get("recurrence", ""))
        subscription_id = form.get("subscription_id") or None
        sale_id = form.get("sale_id") or None
        refunded = _truthy(form.get("refunded"))
        if resource == "sale" and sale_id:
            # A sale id is unique per charge; the refund ping reuses it
            event_id = f"sale:{sale_id}:refunded" if refunded else f"sale:{sale_id}"
        else:
            event_id = body_digest(body)

        event = BillingEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=EventType.UNHANDLED,
            provider_event_type=resource,
            provider_subscription_id=subscription_id,
            provider_customer_id=form.get("purchaser_id") or None,
            user_id=form.get("url_params[user_id]") or form.get("user_id") or None,
            customer_email=form.get("email") or None,
            plan=plan,
            occurred_at=parse_timestamp(form.get("sale_timestamp") or form.get("ended_at")),
            raw_payload=form,
        )

        if resource == "sale":
            if refunded:
                event.event_type = EventType.SUBSCRIPTION_CANCELLED
                event.provider_subscription_id = subscription_id or sale_id
            elif subscription_id and plan in RECURRING_PLANS:
                event.event_type = (
                    EventType.SUBSCRIPTION_RENEWED
                    if _truthy(form.get("is_recurring_charge"))
                    else EventType.SUBSCRIPTION_ACTIVATED
                )
            else:
                # One-shot product or license key purchase
                event.event_type = EventType.PAYMENT_SUCCEEDED
                event.provider_subscription_id = sale_id
                event.plan = plan or PAY_PER_USE
        elif resource == "subscription_restarted":
            event.event_type = EventType.SUBSCRIPTION_ACTIVATED
        elif resource == "subscription_updated":
            event.event_type = EventType.SUBSCRIPTION_UPDATED
        elif resource == "cancellation":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = False
        elif resource == "subscription_ended":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = True
        elif resource == "subscription_payment_failed":
            event.event_type = EventType.PAYMENT_FAILED
        elif resource == "refund":
            event.event_type = EventType.SUBSCRIPTION_CANCELLED
            event.cancel_immediately = True
            event.provider_subscription_id = subscription_id or sale_id
        return event
