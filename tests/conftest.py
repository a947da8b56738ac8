"""
Pytest configuration for submeter tests.
Sets environment variables before any submeter import so Settings picks
them up, and points the store at a throwaway SQLite file.
"""

import os
import tempfile

# Must be set before any submeter imports
os.environ["SUBMETER_ENVIRONMENT"] = "test"
os.environ["SUBMETER_STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test_secret"
os.environ["SUBMETER_PADDLE_WEBHOOK_SECRET"] = "pdl_ntfset_test_secret"
# base64("dodo-test-signing-key")
os.environ["SUBMETER_DODO_WEBHOOK_SECRET"] = "whsec_ZG9kby10ZXN0LXNpZ25pbmcta2V5"
os.environ["SUBMETER_GUMROAD_WEBHOOK_TOKEN"] = "gumroad-test-token"
os.environ["SUBMETER_STRIPE_PRODUCT_MONTHLY"] = "prod_monthly"
os.environ["SUBMETER_STRIPE_PRODUCT_YEARLY"] = "prod_yearly"
os.environ["SUBMETER_STRIPE_PRODUCT_PAY_PER_USE"] = "prod_ppu"
os.environ["SUBMETER_PADDLE_PRODUCT_MONTHLY"] = "pro_monthly"
os.environ["SUBMETER_PADDLE_PRODUCT_YEARLY"] = "pro_yearly"
os.environ["SUBMETER_DODO_PRODUCT_MONTHLY"] = "pdt_monthly"
os.environ["SUBMETER_DODO_PRODUCT_YEARLY"] = "pdt_yearly"
os.environ["SUBMETER_INTERNAL_API_KEY"] = "test-internal-key"
os.environ["SUBMETER_NOTIFICATIONS_ENABLED"] = "false"
os.environ["SUBMETER_MARKER_PRUNE_INTERVAL_S"] = "0"

# Set temp data directories so tests don't need /data
_test_data_dir = tempfile.mkdtemp(prefix="submeter_test_")
os.environ.setdefault("SUBMETER_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("SUBMETER_LOG_DIRECTORY", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

from datetime import datetime

import pytest

# Ensure DB tables exist for all tests (create via SQLModel metadata)
from sqlmodel import SQLModel
from submeter.core.database import get_engine
from submeter.models.billing import (
    audit_table,
    markers_table,
    subscriptions_table,
    usage_events_table,
)

SQLModel.metadata.create_all(get_engine())

# Load error registry so SubmeterError returns correct HTTP status codes
from submeter.core.errors.registry import error_registry
error_registry.load()


NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def clean_tables():
    """Every test starts from an empty store."""
    with get_engine().begin() as conn:
        for table in (usage_events_table, audit_table, markers_table, subscriptions_table):
            conn.execute(table.delete())
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_subscription():
    """Insert a subscription row directly and return its id."""

    def _make(**overrides):
        values = {
            "user_id": "user-1",
            "email": "user1@example.com",
            "provider": "stripe",
            "provider_subscription_id": "sub_1",
            "plan": "monthly",
            "status": "active",
            "provider_status": "active",
            "period_start": datetime(2026, 2, 20),
            "period_end": datetime(2026, 3, 22),
            "last_reset_at": datetime(2026, 2, 20),
            "usage_count": 0,
            "usage_limit": 100,
            "cancel_at_period_end": False,
            "created_at": datetime(2026, 2, 20),
            "updated_at": datetime(2026, 2, 20),
        }
        values.update(overrides)
        with get_engine().begin() as conn:
            return conn.execute(subscriptions_table.insert().values(**values)).inserted_primary_key[0]

    return _make


@pytest.fixture
def fetch_subscription():
    def _fetch(subscription_id):
        import sqlalchemy as sa

        t = subscriptions_table
        with get_engine().connect() as conn:
            row = conn.execute(sa.select(t).where(t.c.id == subscription_id)).first()
        return dict(row._mapping) if row else None

    return _fetch


@pytest.fixture
def audit_rows():
    def _rows(user_id=None):
        import sqlalchemy as sa

        a = audit_table
        stmt = sa.select(a).order_by(a.c.id)
        if user_id is not None:
            stmt = stmt.where(a.c.user_id == user_id)
        with get_engine().connect() as conn:
            return [dict(r._mapping) for r in conn.execute(stmt)]

    return _rows


# ---------------------------------------------------------------------------
# Signed delivery helpers
# ---------------------------------------------------------------------------

def _stripe_headers(body: bytes, ts=None):
    import hashlib
    import hmac
    import time

    ts = int(ts if ts is not None else time.time())
    signed = f"{ts}.".encode("utf-8") + body
    sig = hmac.new(os.environ["SUBMETER_STRIPE_WEBHOOK_SECRET"].encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def _paddle_headers(body: bytes, ts=None):
    import hashlib
    import hmac
    import time

    ts = int(ts if ts is not None else time.time())
    sig = hmac.new(
        os.environ["SUBMETER_PADDLE_WEBHOOK_SECRET"].encode("utf-8"), f"{ts}:".encode("utf-8") + body, hashlib.sha256
    ).hexdigest()
    return {"Paddle-Signature": f"ts={ts};h1={sig}", "Content-Type": "application/json"}


def _dodo_headers(body: bytes, msg_id="msg_1", ts=None):
    import time

    from submeter.services.providers.dodo import sign

    ts = str(int(ts if ts is not None else time.time()))
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": ts,
        "webhook-signature": sign(os.environ["SUBMETER_DODO_WEBHOOK_SECRET"], msg_id, ts, body),
        "Content-Type": "application/json",
    }


@pytest.fixture
def stripe_headers():
    return _stripe_headers


@pytest.fixture
def paddle_headers():
    return _paddle_headers


@pytest.fixture
def dodo_headers():
    return _dodo_headers


@pytest.fixture
def gumroad_query():
    return {"token": os.environ["SUBMETER_GUMROAD_WEBHOOK_TOKEN"]}
