"""
Plan Change Tests
=================

Coverage:
  - preview() is read-only
  - Upgrade: provider called with immediate=True, plan + limit now
  - Downgrade: scheduled for period end, then cancelled
  - Compare-and-set: a concurrent plan change fails with SMT-SUB-002
  - Provider failures leave the row untouched
  - Gumroad has no plan-change API (SMT-PRV-003)
  - Renewal toggle
  - PaddleClient / DodoClient request shape and error mapping (httpx.MockTransport)
  - Period-end changes and withdrawal per provider
  - StripeClient schedule handling (mocked stripe.StripeClient)
"""

import json
from datetime import datetime
from unittest.mock import MagicMock

import httpx
import pytest
import stripe

from submeter.config import Settings
from submeter.core.database import get_engine
from submeter.core.errors import SubmeterError
from submeter.models.billing import subscriptions_table
from submeter.services.plan_change_service import PlanChangeService
from submeter.services.provider_clients import DodoClient, PaddleClient, StripeClient, get_provider_client

MID_PERIOD = datetime(2026, 3, 16)


class FakeClient:
    """Records provider calls; optionally fails or runs a side effect."""

    def __init__(self, error=None, side_effect=None):
        self.calls = []
        self.error = error
        self.side_effect = side_effect

    def change_plan(self, subscription_id, plan, *, immediate):
        self.calls.append(("change_plan", subscription_id, plan, immediate))
        if self.side_effect:
            self.side_effect()
        if self.error:
            raise self.error

    def withdraw_plan_change(self, subscription_id, current_plan):
        self.calls.append(("withdraw_plan_change", subscription_id, current_plan))
        if self.error:
            raise self.error

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self.calls.append(("set_cancel_at_period_end", subscription_id, cancel))
        if self.error:
            raise self.error


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def service(client):
    return PlanChangeService(client_factory=lambda provider: client)


@pytest.fixture
def monthly(make_subscription):
    return make_subscription(period_start=datetime(2026, 3, 1), period_end=datetime(2026, 3, 31))


class TestPreview:
    def test_quote_without_side_effects(self, service, client, monthly, fetch_subscription):
        quote = service.preview("user-1", "yearly", MID_PERIOD)
        assert quote.direction == "upgrade"
        assert quote.charge_cents == 14900 - 950
        assert client.calls == []
        assert fetch_subscription(monthly)["plan"] == "monthly"

    def test_no_subscription(self, service):
        with pytest.raises(SubmeterError) as exc:
            service.preview("nobody", "yearly", MID_PERIOD)
        assert exc.value.code == "SMT-SUB-001"

    def test_same_plan_rejected(self, service, monthly):
        with pytest.raises(SubmeterError) as exc:
            service.preview("user-1", "monthly", MID_PERIOD)
        assert exc.value.code == "SMT-SUB-002"


class TestCommit:
    def test_upgrade_is_immediate(self, service, client, monthly, fetch_subscription, audit_rows):
        outcome = service.commit("user-1", "yearly", MID_PERIOD)

        assert client.calls == [("change_plan", "sub_1", "yearly", True)]
        row = fetch_subscription(monthly)
        assert row["plan"] == "yearly"
        assert row["usage_limit"] == 100
        assert outcome.effective_at == MID_PERIOD
        assert "$139.50" in outcome.summary
        assert audit_rows("user-1")[-1]["action"] == "plan_upgraded"

    def test_downgrade_is_scheduled(self, service, client, make_subscription, fetch_subscription):
        sub_id = make_subscription(
            plan="yearly", period_start=datetime(2026, 1, 1), period_end=datetime(2027, 1, 1)
        )

        outcome = service.commit("user-1", "monthly", MID_PERIOD)

        assert client.calls == [("change_plan", "sub_1", "monthly", False)]
        row = fetch_subscription(sub_id)
        assert row["plan"] == "yearly"
        assert row["scheduled_plan"] == "monthly"
        assert row["scheduled_change_at"] == datetime(2027, 1, 1)
        assert outcome.effective_at == datetime(2027, 1, 1)
        assert outcome.quote.charge_cents == 0

    def test_cancel_scheduled_downgrade(self, service, client, make_subscription, fetch_subscription):
        sub_id = make_subscription(plan="yearly", scheduled_plan="monthly", scheduled_change_at=datetime(2027, 1, 1))

        row = service.cancel_scheduled_change("user-1", MID_PERIOD)

        assert row["scheduled_plan"] is None
        assert fetch_subscription(sub_id)["scheduled_change_at"] is None
        assert client.calls == [("withdraw_plan_change", "sub_1", "yearly")]

    def test_cancel_without_scheduled_change(self, service, monthly):
        with pytest.raises(SubmeterError) as exc:
            service.cancel_scheduled_change("user-1", MID_PERIOD)
        assert exc.value.code == "SMT-SUB-004"

    def test_concurrent_change_is_detected(self, monthly, fetch_subscription):
        def webhook_lands():
            with get_engine().begin() as conn:
                conn.execute(
                    subscriptions_table.update().where(subscriptions_table.c.id == monthly).values(plan="yearly")
                )

        client = FakeClient(side_effect=webhook_lands)
        service = PlanChangeService(client_factory=lambda provider: client)

        with pytest.raises(SubmeterError) as exc:
            service.commit("user-1", "yearly", MID_PERIOD)

        assert exc.value.code == "SMT-SUB-002"
        assert fetch_subscription(monthly)["plan"] == "yearly"

    def test_provider_failure_leaves_row(self, monthly, fetch_subscription, audit_rows):
        client = FakeClient(error=SubmeterError("SMT-PRV-001", detail="timed out"))
        service = PlanChangeService(client_factory=lambda provider: client)

        with pytest.raises(SubmeterError) as exc:
            service.commit("user-1", "yearly", MID_PERIOD)

        assert exc.value.code == "SMT-PRV-001"
        assert fetch_subscription(monthly)["plan"] == "monthly"
        assert audit_rows("user-1") == []

    def test_gumroad_has_no_plan_api(self, make_subscription):
        make_subscription(provider="gumroad", period_start=datetime(2026, 3, 1), period_end=datetime(2026, 3, 31))
        with pytest.raises(SubmeterError) as exc:
            PlanChangeService().commit("user-1", "yearly", MID_PERIOD)
        assert exc.value.code == "SMT-PRV-003"

    def test_get_provider_client(self):
        assert isinstance(get_provider_client("paddle"), PaddleClient)
        with pytest.raises(SubmeterError):
            get_provider_client("gumroad")


class TestRenewalToggle:
    def test_cancel_then_resume(self, service, client, monthly, fetch_subscription):
        service.set_cancel_at_period_end("user-1", True, MID_PERIOD)
        assert fetch_subscription(monthly)["cancel_at_period_end"] is True

        service.set_cancel_at_period_end("user-1", False, MID_PERIOD)
        assert fetch_subscription(monthly)["cancel_at_period_end"] is False
        assert [c[2] for c in client.calls] == [True, False]

    def test_no_op_when_unchanged(self, service, client, monthly):
        service.set_cancel_at_period_end("user-1", False, MID_PERIOD)
        assert client.calls == []


class TestHttpClients:
    def _settings(self):
        return Settings(paddle_api_key="pdl_key", dodo_api_key="dodo_key")

    def test_paddle_change_plan_request(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {}})

        PaddleClient(self._settings(), transport=httpx.MockTransport(handler)).change_plan(
            "sub_p1", "yearly", immediate=True
        )

        assert seen["method"] == "PATCH"
        assert seen["path"] == "/subscriptions/sub_p1"
        assert seen["auth"] == "Bearer pdl_key"
        assert seen["body"]["items"] == [{"price_id": "pro_yearly", "quantity": 1}]
        assert seen["body"]["proration_billing_mode"] == "prorated_immediately"

    def test_dodo_cancel_at_period_end(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        DodoClient(self._settings(), transport=httpx.MockTransport(handler)).set_cancel_at_period_end("sub_d1", True)
        assert seen["body"] == {"cancel_at_next_billing_date": True}

    def test_rejection_maps_to_prv_002(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"error": "bad"}))
        with pytest.raises(SubmeterError) as exc:
            PaddleClient(self._settings(), transport=transport).set_cancel_at_period_end("sub_p1", True)
        assert exc.value.code == "SMT-PRV-002"

    def test_timeout_maps_to_prv_001(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(SubmeterError) as exc:
            DodoClient(self._settings(), transport=httpx.MockTransport(handler)).change_plan(
                "sub_d1", "yearly", immediate=True
            )
        assert exc.value.code == "SMT-PRV-001"

    def test_missing_api_key(self):
        with pytest.raises(SubmeterError) as exc:
            PaddleClient(Settings(paddle_api_key=None)).change_plan("sub_p1", "yearly", immediate=True)
        assert exc.value.code == "SMT-PRV-003"

    def _capture(self, seen):
        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content) if request.content else None))
            return httpx.Response(200, json={})

        return httpx.MockTransport(handler)

    def test_dodo_downgrade_waits_for_next_cycle(self):
        seen = []
        DodoClient(self._settings(), transport=self._capture(seen)).change_plan("sub_d1", "monthly", immediate=False)
        assert seen == [
            (
                "POST",
                "/subscriptions/sub_d1/change-plan",
                {"product_id": "pdt_monthly", "quantity": 1, "proration_billing_mode": "next_billing_cycle"},
            )
        ]

    def test_dodo_withdraw_deletes_pending_change(self):
        seen = []
        DodoClient(self._settings(), transport=self._capture(seen)).withdraw_plan_change("sub_d1", "yearly")
        assert seen == [("DELETE", "/subscriptions/sub_d1/change-plan", None)]

    def test_paddle_downgrade_defers_billing(self):
        seen = []
        PaddleClient(self._settings(), transport=self._capture(seen)).change_plan("sub_p1", "monthly", immediate=False)
        method, path, body = seen[0]
        assert (method, path) == ("PATCH", "/subscriptions/sub_p1")
        assert body == {
            "items": [{"price_id": "pro_monthly", "quantity": 1}],
            "proration_billing_mode": "full_next_billing_period",
        }

    def test_paddle_withdraw_restores_current_items(self):
        seen = []
        PaddleClient(self._settings(), transport=self._capture(seen)).withdraw_plan_change("sub_p1", "yearly")
        assert seen[0][2]["items"] == [{"price_id": "pro_yearly", "quantity": 1}]
        assert seen[0][2]["proration_billing_mode"] == "full_next_billing_period"


def _stripe_subscription(schedule=None):
    return {
        "id": "sub_s1",
        "schedule": schedule,
        "items": {"data": [{"id": "si_1", "price": {"id": "prod_yearly"}, "quantity": 1}]},
    }


class TestStripeClient:
    @pytest.fixture
    def api(self):
        api = MagicMock()
        api.subscriptions.retrieve.return_value = _stripe_subscription()
        api.subscription_schedules.create.return_value = {
            "id": "sub_sched_1",
            "phases": [{"start_date": 1767225600, "end_date": 1798761600}],
        }
        return api

    def test_downgrade_goes_through_schedule(self, api):
        StripeClient(Settings(), api=api).change_plan("sub_s1", "monthly", immediate=False)

        api.subscriptions.update.assert_not_called()
        api.subscription_schedules.create.assert_called_once_with(params={"from_subscription": "sub_s1"})
        schedule_id, = api.subscription_schedules.update.call_args.args
        params = api.subscription_schedules.update.call_args.kwargs["params"]
        assert schedule_id == "sub_sched_1"
        assert params["end_behavior"] == "release"
        current, following = params["phases"]
        assert current["items"] == [{"price": "prod_yearly", "quantity": 1}]
        assert current["end_date"] == 1798761600
        assert following["items"] == [{"price": "prod_monthly", "quantity": 1}]

    def test_upgrade_replaces_pending_schedule(self, api):
        api.subscriptions.retrieve.return_value = _stripe_subscription(schedule="sub_sched_old")

        StripeClient(Settings(), api=api).change_plan("sub_s1", "yearly", immediate=True)

        api.subscription_schedules.release.assert_called_once_with("sub_sched_old")
        api.subscriptions.update.assert_called_once_with(
            "sub_s1",
            params={"items": [{"id": "si_1", "price": "prod_yearly"}], "proration_behavior": "always_invoice"},
        )

    def test_withdraw_releases_schedule(self, api):
        api.subscriptions.retrieve.return_value = _stripe_subscription(schedule="sub_sched_1")
        StripeClient(Settings(), api=api).withdraw_plan_change("sub_s1", "yearly")
        api.subscription_schedules.release.assert_called_once_with("sub_sched_1")

    def test_withdraw_without_schedule_is_noop(self, api):
        StripeClient(Settings(), api=api).withdraw_plan_change("sub_s1", "yearly")
        api.subscription_schedules.release.assert_not_called()

    def test_connection_error_is_retryable(self, api):
        api.subscriptions.update.side_effect = stripe.APIConnectionError("connection reset")
        with pytest.raises(SubmeterError) as exc:
            StripeClient(Settings(), api=api).set_cancel_at_period_end("sub_s1", True)
        assert exc.value.code == "SMT-PRV-001"

    def test_missing_secret_key(self):
        with pytest.raises(SubmeterError) as exc:
            StripeClient(Settings(stripe_secret_key=None)).set_cancel_at_period_end("sub_s1", True)
        assert exc.value.code == "SMT-PRV-003"

    def test_client_is_built_once(self):
        client = StripeClient(Settings(stripe_secret_key="sk_test_123"))
        assert client._client() is client._client()
