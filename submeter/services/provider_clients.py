"""
Provider API clients
====================

Outbound calls made when a user changes plan or toggles renewal. Every
call carries a bounded timeout (SUBMETER_PROVIDER_API_TIMEOUT_S); a
timeout or network failure raises the retryable SMT-PRV-001, a rejection
SMT-PRV-002, and a provider without API credentials SMT-PRV-003.

Local state is only written after the provider call succeeds, so a
failed call leaves nothing to roll back.

Period-end changes:
    dodo    change-plan with next_billing_cycle; DELETE change-plan withdraws
    stripe  subscription schedule (current phase, then the new price); release withdraws
    paddle  items replaced with billing deferred (full_next_billing_period)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import stripe

from submeter.config import Settings, settings
from submeter.core.errors import SubmeterError

logger = logging.getLogger(__name__)


class ProviderClient(ABC):
    provider: str = ""

    def __init__(self, cfg: Settings = settings) -> None:
        self.settings = cfg

    def _product_for(self, plan: str) -> str:
        product_id = self.settings.product_id(self.provider, plan)
        if not product_id:
            raise SubmeterError(
                "SMT-PRV-003",
                detail=f"no {self.provider} product configured for plan {plan!r}",
                context={"provider": self.provider, "plan": plan},
            )
        return product_id

    @abstractmethod
    def change_plan(self, subscription_id: str, plan: str, *, immediate: bool) -> None:
        """Move the provider subscription to *plan* (now, or from the next period)."""

    @abstractmethod
    def withdraw_plan_change(self, subscription_id: str, current_plan: str) -> None:
        """Drop a pending period-end change so the subscription renews on *current_plan*."""

    @abstractmethod
    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        """Schedule (or withdraw) cancellation at the end of the current period."""


class _HttpProviderClient(ProviderClient):
    """Shared httpx plumbing for JSON REST providers."""

    api_key_setting = ""
    api_url_setting = ""

    def __init__(self, cfg: Settings = settings, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(cfg)
        self._transport = transport

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        api_key = getattr(self.settings, self.api_key_setting)
        if not api_key:
            raise SubmeterError("SMT-PRV-003", detail=f"{self.provider} API key not configured")
        base_url = getattr(self.settings, self.api_url_setting)
        try:
            with httpx.Client(
                base_url=base_url,
                timeout=self.settings.provider_api_timeout_s,
                transport=self._transport,
                headers={"Authorization": f"Bearer {api_key}"},
            ) as client:
                response = client.request(method, path, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise SubmeterError(
                "SMT-PRV-001",
                detail=f"{self.provider} {method} {path} timed out",
                context={"provider": self.provider},
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise SubmeterError(
                "SMT-PRV-002",
                detail=f"{self.provider} {method} {path} returned {exc.response.status_code}: {exc.response.text[:200]}",
                context={"provider": self.provider, "status": exc.response.status_code},
            ) from exc
        except httpx.TransportError as exc:
            raise SubmeterError(
                "SMT-PRV-001",
                detail=f"{self.provider} {method} {path} failed: {exc}",
                context={"provider": self.provider},
            ) from exc

        logger.info(
            "provider_api_call",
            extra={"provider": self.provider, "http.method": method, "http.path": path, "http.status_code": response.status_code},
        )
        return response.json() if response.content else {}


class PaddleClient(_HttpProviderClient):
    """Paddle Billing.

    Paddle has no pending item change: a period-end switch replaces the
    items now with billing deferred to the next period
    (``full_next_billing_period``). The state machine keeps the current
    plan locally until scheduled_change_at.
    """

    provider = "paddle"
    api_key_setting = "paddle_api_key"
    api_url_setting = "paddle_api_url"

    def _set_items(self, subscription_id: str, plan: str, billing_mode: str) -> None:
        self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            {
                "items": [{"price_id": self._product_for(plan), "quantity": 1}],
                "proration_billing_mode": billing_mode,
            },
        )

    def change_plan(self, subscription_id: str, plan: str, *, immediate: bool) -> None:
        self._set_items(subscription_id, plan, "prorated_immediately" if immediate else "full_next_billing_period")

    def withdraw_plan_change(self, subscription_id: str, current_plan: str) -> None:
        self._set_items(subscription_id, current_plan, "full_next_billing_period")

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        if cancel:
            self._request(
                "POST",
                f"/subscriptions/{subscription_id}/cancel",
                {"effective_from": "next_billing_period"},
            )
        else:
            self._request("PATCH", f"/subscriptions/{subscription_id}", {"scheduled_change": None})


class DodoClient(_HttpProviderClient):
    provider = "dodo"
    api_key_setting = "dodo_api_key"
    api_url_setting = "dodo_api_url"

    def change_plan(self, subscription_id: str, plan: str, *, immediate: bool) -> None:
        self._request(
            "POST",
            f"/subscriptions/{subscription_id}/change-plan",
            {
                "product_id": self._product_for(plan),
                "quantity": 1,
                "proration_billing_mode": "prorated_immediately" if immediate else "next_billing_cycle",
            },
        )

    def withdraw_plan_change(self, subscription_id: str, current_plan: str) -> None:
        self._request("DELETE", f"/subscriptions/{subscription_id}/change-plan")

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            {"cancel_at_next_billing_date": cancel},
        )


class StripeClient(ProviderClient):
    """Stripe through a per-instance ``stripe.StripeClient``.

    Period-end changes go through a subscription schedule: the current
    phase keeps today's price until its end date, the next phase carries
    the new price, and the schedule then releases the subscription.
    """

    provider = "stripe"

    def __init__(self, cfg: Settings = settings, api: Optional[stripe.StripeClient] = None) -> None:
        super().__init__(cfg)
        self._api = api

    def _client(self) -> stripe.StripeClient:
        if self._api is None:
            if not self.settings.stripe_secret_key:
                raise SubmeterError("SMT-PRV-003", detail="stripe secret key not configured")
            self._api = stripe.StripeClient(
                self.settings.stripe_secret_key,
                http_client=stripe.RequestsClient(timeout=self.settings.provider_api_timeout_s),
            )
        return self._api

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            result = fn(*args, **kwargs)
        except stripe.APIConnectionError as exc:
            raise SubmeterError(
                "SMT-PRV-001", detail=f"stripe {operation} unreachable: {exc}", context={"provider": self.provider}
            ) from exc
        except stripe.StripeError as exc:
            raise SubmeterError(
                "SMT-PRV-002", detail=f"stripe rejected {operation}: {exc}", context={"provider": self.provider}
            ) from exc
        logger.info("provider_api_call", extra={"provider": self.provider, "operation": operation})
        return result

    def _release_schedule(self, api: stripe.StripeClient, subscription) -> None:
        schedule_id = subscription["schedule"]
        if schedule_id:
            self._call("subscription_schedules.release", api.subscription_schedules.release, schedule_id)

    def change_plan(self, subscription_id: str, plan: str, *, immediate: bool) -> None:
        api = self._client()
        price_id = self._product_for(plan)
        subscription = self._call("subscriptions.retrieve", api.subscriptions.retrieve, subscription_id)
        item = subscription["items"]["data"][0]
        # A newer change replaces whatever was pending
        self._release_schedule(api, subscription)

        if immediate:
            self._call(
                "subscriptions.update",
                api.subscriptions.update,
                subscription_id,
                params={"items": [{"id": item["id"], "price": price_id}], "proration_behavior": "always_invoice"},
            )
            return

        schedule = self._call(
            "subscription_schedules.create",
            api.subscription_schedules.create,
            params={"from_subscription": subscription_id},
        )
        current = schedule["phases"][0]
        self._call(
            "subscription_schedules.update",
            api.subscription_schedules.update,
            schedule["id"],
            params={
                "end_behavior": "release",
                "proration_behavior": "none",
                "phases": [
                    {
                        "items": [{"price": item["price"]["id"], "quantity": item["quantity"] or 1}],
                        "start_date": current["start_date"],
                        "end_date": current["end_date"],
                    },
                    {"items": [{"price": price_id, "quantity": 1}], "iterations": 1},
                ],
            },
        )

    def withdraw_plan_change(self, subscription_id: str, current_plan: str) -> None:
        api = self._client()
        subscription = self._call("subscriptions.retrieve", api.subscriptions.retrieve, subscription_id)
        self._release_schedule(api, subscription)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        self._call(
            "subscriptions.update",
            self._client().subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": cancel},
        )


_CLIENTS = {
    "stripe": StripeClient,
    "paddle": PaddleClient,
    "dodo": DodoClient,
}


def get_provider_client(provider: str) -> ProviderClient:
    """Client for *provider*; Gumroad exposes no API for plan changes."""
    cls = _CLIENTS.get(provider)
    if cls is None:
        raise SubmeterError(
            "SMT-PRV-003",
            detail=f"{provider} does not support plan changes through its API",
            context={"provider": provider},
        )
    return cls()
