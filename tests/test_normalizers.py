"""
Provider Normalizer Tests
=========================

Signature verification and event mapping for Stripe, Paddle, Dodo and
Gumroad. Every provider must map its own vocabulary onto the canonical
BillingEvent, reject bad signatures with SMT-AUTH-*, and turn unknown
event types into UNHANDLED rather than errors.
"""

import json
from datetime import datetime
from urllib.parse import urlencode

import pytest

from submeter.core.errors import SubmeterError
from submeter.models.events import EventType
from submeter.services.providers import get_normalizer
from submeter.services.providers.base import PayloadError, SignatureError, parse_timestamp
from submeter.services.providers.paddle import parse_signature_header


def _json(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

class TestParseTimestamp:
    def test_epoch_int(self):
        assert parse_timestamp(1772366400) == datetime(2026, 3, 1, 12, 0, 0)

    def test_epoch_string(self):
        assert parse_timestamp("1772366400") == datetime(2026, 3, 1, 12, 0, 0)

    def test_iso_with_z(self):
        assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, 0, 0)

    def test_iso_with_offset_is_converted_to_utc(self):
        assert parse_timestamp("2026-03-01T14:00:00+02:00") == datetime(2026, 3, 1, 12, 0, 0)

    def test_garbage_returns_none(self):
        assert parse_timestamp("not-a-date") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


class TestGetNormalizer:
    def test_unknown_provider(self):
        with pytest.raises(SubmeterError) as exc:
            get_normalizer("square")
        assert exc.value.code == "SMT-EVT-002"

    @pytest.mark.parametrize("provider", ["stripe", "paddle", "dodo", "gumroad"])
    def test_known_providers(self, provider):
        assert get_normalizer(provider).provider == provider


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def _stripe_subscription(event_type="customer.subscription.created", **obj_overrides):
    obj = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_start": 1772366400,
        "current_period_end": 1774958400,
        "metadata": {"user_id": "user-1", "email": "a@example.com"},
        "items": {"data": [{"id": "si_1", "price": {"id": "price_1", "product": "prod_monthly"}}]},
    }
    obj.update(obj_overrides)
    return {"id": "evt_1", "type": event_type, "created": 1772366400, "data": {"object": obj}}


class TestStripeNormalizer:
    """Stripe events verified through stripe.Webhook.construct_event."""

    def test_subscription_created_maps_to_activated(self, stripe_headers):
        body = _json(_stripe_subscription())
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_ACTIVATED
        assert event.event_id == "evt_1"
        assert event.provider_subscription_id == "sub_123"
        assert event.user_id == "user-1"
        assert event.plan == "monthly"
        assert event.period_start == datetime(2026, 3, 1, 12, 0, 0)
        assert event.customer_email == "a@example.com"

    def test_missing_signature_header(self):
        body = _json(_stripe_subscription())
        with pytest.raises(SignatureError) as exc:
            get_normalizer("stripe").normalize(body, {})
        assert exc.value.code == "SMT-AUTH-002"

    def test_tampered_body_rejected(self, stripe_headers):
        body = _json(_stripe_subscription())
        headers = stripe_headers(body)
        tampered = body.replace(b"user-1", b"user-2")
        with pytest.raises(SignatureError) as exc:
            get_normalizer("stripe").normalize(tampered, headers)
        assert exc.value.code == "SMT-AUTH-001"

    def test_stale_timestamp_rejected(self, stripe_headers):
        body = _json(_stripe_subscription())
        with pytest.raises(SignatureError):
            get_normalizer("stripe").normalize(body, stripe_headers(body, ts=1_000_000_000))

    def test_cancel_at_period_end_toggle_is_scheduled_cancel(self, stripe_headers):
        payload = _stripe_subscription("customer.subscription.updated", cancel_at_period_end=True)
        payload["data"]["previous_attributes"] = {"cancel_at_period_end": False}
        body = _json(payload)
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_CANCELLED
        assert event.cancel_immediately is False

    def test_plain_update(self, stripe_headers):
        payload = _stripe_subscription("customer.subscription.updated", status="past_due")
        body = _json(payload)
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_UPDATED
        assert event.status == "past_due"
        assert event.cancel_at_period_end is False

    def test_deleted_is_immediate_cancel(self, stripe_headers):
        body = _json(_stripe_subscription("customer.subscription.deleted", status="canceled"))
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_CANCELLED
        assert event.cancel_immediately is True

    def test_invoice_paid_cycle_is_renewal(self, stripe_headers):
        payload = {
            "id": "evt_inv",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "id": "in_1",
                    "billing_reason": "subscription_cycle",
                    "subscription": "sub_123",
                    "customer": "cus_1",
                    "subscription_details": {"metadata": {"user_id": "user-1"}},
                    "lines": {"data": [{"period": {"start": 1774958400, "end": 1777550400}}]},
                }
            },
        }
        body = _json(payload)
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_RENEWED
        assert event.provider_subscription_id == "sub_123"
        assert event.user_id == "user-1"
        assert event.period_end == parse_timestamp(1777550400)

    def test_first_invoice_is_not_a_renewal(self, stripe_headers):
        payload = {
            "id": "evt_inv0",
            "type": "invoice.paid",
            "data": {"object": {"billing_reason": "subscription_create", "subscription": "sub_123"}},
        }
        body = _json(payload)
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.UNHANDLED

    def test_checkout_payment_is_pay_per_use(self, stripe_headers):
        payload = {
            "id": "evt_cs",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "mode": "payment",
                    "payment_intent": "pi_1",
                    "client_reference_id": "user-9",
                    "customer_details": {"email": "nine@example.com"},
                }
            },
        }
        body = _json(payload)
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.PAYMENT_SUCCEEDED
        assert event.provider_subscription_id == "pi_1"
        assert event.user_id == "user-9"
        assert event.plan == "pay-per-use"

    def test_unknown_type_is_unhandled(self, stripe_headers):
        body = _json({"id": "evt_x", "type": "charge.dispute.created", "data": {"object": {}}})
        event = get_normalizer("stripe").normalize(body, stripe_headers(body))
        assert event.event_type is EventType.UNHANDLED
        assert event.is_handled is False

    def test_unverified_replay_skips_signature(self):
        body = _json(_stripe_subscription())
        event = get_normalizer("stripe").normalize(body, {}, verify=False)
        assert event.event_type is EventType.SUBSCRIPTION_ACTIVATED


# ---------------------------------------------------------------------------
# Paddle
# ---------------------------------------------------------------------------

def _paddle(event_type, **data_overrides):
    data = {
        "id": "sub_01paddle",
        "status": "active",
        "customer_id": "ctm_1",
        "custom_data": {"user_id": "user-2", "email": "b@example.com"},
        "items": [{"price": {"id": "pri_1", "product_id": "pro_yearly"}}],
        "current_billing_period": {"starts_at": "2026-03-01T12:00:00Z", "ends_at": "2027-03-01T12:00:00Z"},
    }
    data.update(data_overrides)
    return {"event_id": "evt_01paddle", "event_type": event_type, "occurred_at": "2026-03-01T12:00:00Z", "data": data}


class TestPaddleNormalizer:
    def test_parse_signature_header_with_rotation(self):
        ts, sigs = parse_signature_header("ts=1700000000;h1=aaa;h1=bbb")
        assert ts == 1700000000
        assert sigs == ["aaa", "bbb"]

    def test_subscription_created(self, paddle_headers):
        body = _json(_paddle("subscription.created"))
        event = get_normalizer("paddle").normalize(body, paddle_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_ACTIVATED
        assert event.plan == "yearly"
        assert event.user_id == "user-2"
        assert event.period_end == datetime(2027, 3, 1, 12, 0, 0)

    def test_bad_signature(self, paddle_headers):
        body = _json(_paddle("subscription.created"))
        headers = paddle_headers(b"something else")
        with pytest.raises(SignatureError) as exc:
            get_normalizer("paddle").normalize(body, headers)
        assert exc.value.code == "SMT-AUTH-001"

    def test_old_timestamp(self, paddle_headers):
        body = _json(_paddle("subscription.created"))
        with pytest.raises(SignatureError) as exc:
            get_normalizer("paddle").normalize(body, paddle_headers(body, ts=1_000_000_000))
        assert exc.value.code == "SMT-AUTH-003"

    def test_scheduled_cancel(self, paddle_headers):
        body = _json(_paddle("subscription.updated", scheduled_change={"action": "cancel"}))
        event = get_normalizer("paddle").normalize(body, paddle_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_CANCELLED
        assert event.cancel_immediately is False

    def test_past_due(self, paddle_headers):
        body = _json(_paddle("subscription.past_due", status="past_due"))
        event = get_normalizer("paddle").normalize(body, paddle_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_UPDATED
        assert event.status == "past_due"

    def test_recurring_transaction_is_renewal(self, paddle_headers):
        payload = _paddle(
            "transaction.completed",
            id="txn_1",
            origin="subscription_recurring",
            subscription_id="sub_01paddle",
            billing_period={"starts_at": "2027-03-01T12:00:00Z", "ends_at": "2028-03-01T12:00:00Z"},
        )
        body = _json(payload)
        event = get_normalizer("paddle").normalize(body, paddle_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_RENEWED
        assert event.provider_subscription_id == "sub_01paddle"

    def test_one_off_transaction_is_pay_per_use(self, paddle_headers):
        payload = _paddle("transaction.completed", id="txn_2", origin="web", subscription_id=None, items=[])
        body = _json(payload)
        event = get_normalizer("paddle").normalize(body, paddle_headers(body))
        assert event.event_type is EventType.PAYMENT_SUCCEEDED
        assert event.provider_subscription_id == "txn_2"
        assert event.plan == "pay-per-use"

    def test_malformed_json(self, paddle_headers):
        body = b"{not json"
        with pytest.raises(PayloadError) as exc:
            get_normalizer("paddle").normalize(body, paddle_headers(body))
        assert exc.value.code == "SMT-EVT-001"


# ---------------------------------------------------------------------------
# Dodo
# ---------------------------------------------------------------------------

def _dodo(event_type, **data_overrides):
    data = {
        "subscription_id": "sub_dodo_1",
        "product_id": "pdt_monthly",
        "status": "active",
        "customer": {"customer_id": "cus_d1", "email": "c@example.com"},
        "metadata": {"user_id": "user-3"},
        "previous_billing_date": "2026-03-01T12:00:00Z",
        "next_billing_date": "2026-03-31T12:00:00Z",
    }
    data.update(data_overrides)
    return {"type": event_type, "timestamp": "2026-03-01T12:00:00Z", "data": data}


class TestDodoNormalizer:
    def test_active(self, dodo_headers):
        body = _json(_dodo("subscription.active"))
        event = get_normalizer("dodo").normalize(body, dodo_headers(body, msg_id="msg_a"))
        assert event.event_type is EventType.SUBSCRIPTION_ACTIVATED
        assert event.event_id == "msg_a"
        assert event.plan == "monthly"
        assert event.period_end == datetime(2026, 3, 31, 12, 0, 0)

    def test_missing_headers(self):
        body = _json(_dodo("subscription.active"))
        with pytest.raises(SignatureError) as exc:
            get_normalizer("dodo").normalize(body, {"webhook-id": "msg_a"})
        assert exc.value.code == "SMT-AUTH-002"

    def test_signature_from_other_message_rejected(self, dodo_headers):
        body = _json(_dodo("subscription.active"))
        headers = dodo_headers(body, msg_id="msg_a")
        headers["webhook-id"] = "msg_b"
        with pytest.raises(SignatureError):
            get_normalizer("dodo").normalize(body, headers)

    def test_cancel_with_future_period_end_is_scheduled(self, dodo_headers):
        body = _json(_dodo("subscription.cancelled", next_billing_date="2099-01-01T00:00:00Z"))
        event = get_normalizer("dodo").normalize(body, dodo_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_CANCELLED
        assert event.cancel_immediately is False

    def test_expired_is_immediate(self, dodo_headers):
        body = _json(_dodo("subscription.expired"))
        event = get_normalizer("dodo").normalize(body, dodo_headers(body))
        assert event.cancel_immediately is True

    def test_on_hold_maps_to_paused(self, dodo_headers):
        body = _json(_dodo("subscription.on_hold"))
        event = get_normalizer("dodo").normalize(body, dodo_headers(body))
        assert event.event_type is EventType.SUBSCRIPTION_UPDATED
        assert event.status == "paused"

    def test_one_off_payment(self, dodo_headers):
        body = _json(_dodo("payment.succeeded", subscription_id=None, payment_id="pay_1", product_id=None))
        event = get_normalizer("dodo").normalize(body, dodo_headers(body))
        assert event.event_type is EventType.PAYMENT_SUCCEEDED
        assert event.provider_subscription_id == "pay_1"
        assert event.plan == "pay-per-use"

    def test_subscription_payment_succeeded_is_unhandled(self, dodo_headers):
        body = _json(_dodo("payment.succeeded", payment_id="pay_2"))
        event = get_normalizer("dodo").normalize(body, dodo_headers(body))
        assert event.event_type is EventType.UNHANDLED


# ---------------------------------------------------------------------------
# Gumroad
# ---------------------------------------------------------------------------

def _gumroad(**fields) -> bytes:
    form = {
        "sale_id": "sale_1",
        "product_permalink": "pro-monthly",
        "email": "d@example.com",
        "url_params[user_id]": "user-4",
        "subscription_id": "gsub_1",
        "recurrence": "monthly",
    }
    form.update(fields)
    return urlencode({k: v for k, v in form.items() if v is not None}).encode("utf-8")


class TestGumroadNormalizer:
    def test_first_sale_activates(self, gumroad_query):
        event = get_normalizer("gumroad").normalize(_gumroad(), {}, gumroad_query)
        assert event.event_type is EventType.SUBSCRIPTION_ACTIVATED
        assert event.event_id == "sale:sale_1"
        assert event.user_id == "user-4"
        assert event.plan == "monthly"

    def test_recurring_charge_renews(self, gumroad_query):
        body = _gumroad(sale_id="sale_2", is_recurring_charge="true")
        event = get_normalizer("gumroad").normalize(body, {}, gumroad_query)
        assert event.event_type is EventType.SUBSCRIPTION_RENEWED

    def test_refund_ping_has_distinct_event_id(self, gumroad_query):
        event = get_normalizer("gumroad").normalize(_gumroad(refunded="true"), {}, gumroad_query)
        assert event.event_type is EventType.SUBSCRIPTION_CANCELLED
        assert event.event_id == "sale:sale_1:refunded"

    def test_missing_token(self):
        with pytest.raises(SignatureError) as exc:
            get_normalizer("gumroad").normalize(_gumroad(), {}, {})
        assert exc.value.code == "SMT-AUTH-002"

    def test_wrong_token(self):
        with pytest.raises(SignatureError) as exc:
            get_normalizer("gumroad").normalize(_gumroad(), {}, {"token": "nope"})
        assert exc.value.code == "SMT-AUTH-001"

    def test_cancellation_is_scheduled(self, gumroad_query):
        body = _gumroad(resource_name="cancellation", sale_id=None)
        event = get_normalizer("gumroad").normalize(body, {}, gumroad_query)
        assert event.event_type is EventType.SUBSCRIPTION_CANCELLED
        assert event.cancel_immediately is False

    def test_one_off_product_is_pay_per_use(self, gumroad_query):
        body = _gumroad(product_permalink="credits-pack", subscription_id=None, recurrence=None)
        event = get_normalizer("gumroad").normalize(body, {}, gumroad_query)
        assert event.event_type is EventType.PAYMENT_SUCCEEDED
        assert event.plan == "pay-per-use"
        assert event.provider_subscription_id == "sale_1"

    def test_no_user_is_not_resolvable(self, gumroad_query):
        body = _gumroad(**{"url_params[user_id]": None})
        event = get_normalizer("gumroad").normalize(body, {}, gumroad_query)
        assert event.is_resolvable is False
