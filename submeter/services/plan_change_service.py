"""
Plan Change Service
===================

User-initiated changes to a recurring subscription:

- preview(): read-only proration quote, re-derived on every call.
- commit(): provider API call first (bounded timeout), then the local
  write. Upgrades take effect now (plan + limit); downgrades are stored
  as scheduled_plan / scheduled_change_at and applied by the state
  machine on the renewal at period end.
- cancel_scheduled_change(): withdraw a pending downgrade.
- set_cancel_at_period_end(): cancel or resume renewal.

Local writes are compare-and-set on the plan observed when the quote was
computed; if a webhook changed the row in between, the request fails
with SMT-SUB-002 instead of overwriting provider state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import sqlalchemy as sa

from submeter.core.database import _sqlite_retry, get_engine
from submeter.core.errors import SubmeterError
from submeter.models.billing import AuditSource, SubscriptionStatus, subscriptions_table, utcnow
from submeter.services.audit import record_audit
from submeter.services.plan_catalog import RECURRING_PLANS, PlanCatalog, plan_catalog
from submeter.services.proration import (
    IMMEDIATE,
    ProrationQuote,
    calculate_proration,
    elapsed_fraction,
)
from submeter.services.provider_clients import ProviderClient, get_provider_client

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value


def _money(cents: int) -> str:
    return f"${cents / 100:.2f}"


@dataclass
class PlanChangeOutcome:
    subscription: Dict[str, Any]
    quote: ProrationQuote
    summary: str
    effective_at: datetime


def serialize_subscription(row: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-friendly view of a subscription row."""
    out = {
        "id": row["id"],
        "provider": row["provider"],
        "plan": row["plan"],
        "status": row["status"],
        "usage_count": row["usage_count"],
        "usage_limit": row["usage_limit"],
        "cancel_at_period_end": bool(row["cancel_at_period_end"]),
        "scheduled_plan": row["scheduled_plan"],
    }
    for key in ("period_start", "period_end", "scheduled_change_at", "cancelled_at"):
        out[key] = row[key].isoformat() if row[key] else None
    return out


class PlanChangeService:
    def __init__(
        self,
        engine_factory=get_engine,
        catalog: PlanCatalog = plan_catalog,
        client_factory: Callable[[str], ProviderClient] = get_provider_client,
    ) -> None:
        self._engine_factory = engine_factory
        self.catalog = catalog
        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def current_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
        """The user's active recurring subscription, if any."""
        t = subscriptions_table
        with self._engine_factory().connect() as conn:
            row = conn.execute(
                sa.select(t)
                .where(t.c.user_id == user_id, t.c.status == ACTIVE, t.c.plan.in_(RECURRING_PLANS))
                .order_by(t.c.id.desc())
                .limit(1)
            ).first()
        return dict(row._mapping) if row else None

    def _require_subscription(self, user_id: str) -> Dict[str, Any]:
        row = self.current_subscription(user_id)
        if row is None:
            raise SubmeterError("SMT-SUB-001", detail=f"user {user_id} has no active recurring subscription")
        return row

    def _quote(self, row: Dict[str, Any], new_plan: str, now: datetime) -> ProrationQuote:
        try:
            return calculate_proration(
                row["plan"],
                new_plan,
                elapsed_fraction(row["period_start"], row["period_end"], now),
                self.catalog,
            )
        except ValueError as exc:
            raise SubmeterError("SMT-SUB-002", detail=str(exc), context={"new_plan": new_plan}) from exc

    def _cas_write(self, row: Dict[str, Any], now: datetime, action: str, detail: str, **values: Any) -> Dict[str, Any]:
        t = subscriptions_table

        def _do() -> Optional[Dict[str, Any]]:
            with self._engine_factory().begin() as conn:
                result = conn.execute(
                    t.update()
                    .where(t.c.id == row["id"], t.c.status == ACTIVE, t.c.plan == row["plan"])
                    .values(updated_at=now, **values)
                )
                if result.rowcount != 1:
                    return None
                record_audit(
                    conn,
                    subscription_id=row["id"],
                    user_id=row["user_id"],
                    source=AuditSource.USER.value,
                    actor=row["user_id"],
                    action=action,
                    from_status=ACTIVE,
                    to_status=ACTIVE,
                    detail=detail,
                    now=now,
                )
                return dict(conn.execute(sa.select(t).where(t.c.id == row["id"])).first()._mapping)

        updated = _sqlite_retry(_do)
        if updated is None:
            raise SubmeterError(
                "SMT-SUB-002",
                detail=f"subscription {row['id']} changed while the request was in flight",
            )
        return updated

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def preview(self, user_id: str, new_plan: str, now: Optional[datetime] = None) -> ProrationQuote:
        now = now or utcnow()
        return self._quote(self._require_subscription(user_id), new_plan, now)

    def commit(self, user_id: str, new_plan: str, now: Optional[datetime] = None) -> PlanChangeOutcome:
        now = now or utcnow()
        row = self._require_subscription(user_id)
        quote = self._quote(row, new_plan, now)
        immediate = quote.effective == IMMEDIATE

        client = self._client_factory(row["provider"])
        client.change_plan(row["provider_subscription_id"], new_plan, immediate=immediate)

        if immediate:
            updated = self._cas_write(
                row, now, "plan_upgraded", f"{row['plan']} -> {new_plan}",
                plan=new_plan,
                usage_limit=quote.new_usage_limit,
                scheduled_plan=None,
                scheduled_change_at=None,
            )
            effective_at = now
            summary = (
                f"Upgraded from {row['plan']} to {new_plan}, effective immediately. "
                f"Charged {_money(quote.charge_cents)}"
            )
            if quote.credit_cents:
                summary += f"; {_money(quote.credit_cents)} credit applied to future invoices"
            summary += "."
        else:
            effective_at = row["period_end"] or now
            updated = self._cas_write(
                row, now, "plan_change_scheduled", f"{row['plan']} -> {new_plan} at {effective_at.isoformat()}",
                scheduled_plan=new_plan,
                scheduled_change_at=effective_at,
            )
            summary = (
                f"Switching from {row['plan']} to {new_plan} on {effective_at.date().isoformat()}. "
                f"No charge today; {_money(quote.credit_cents)} credit for unused {row['plan']} time "
                "applies to future invoices."
            )

        logger.info(
            "plan_change_committed",
            extra={
                "user_id": user_id,
                "subscription_id": row["id"],
                "direction": quote.direction,
                "from_plan": row["plan"],
                "to_plan": new_plan,
                "charge_cents": quote.charge_cents,
                "credit_cents": quote.credit_cents,
            },
        )
        return PlanChangeOutcome(updated, quote, summary, effective_at)

    def cancel_scheduled_change(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        row = self._require_subscription(user_id)
        if not row["scheduled_plan"]:
            raise SubmeterError("SMT-SUB-004", detail=f"subscription {row['id']} has no scheduled change")

        client = self._client_factory(row["provider"])
        client.withdraw_plan_change(row["provider_subscription_id"], row["plan"])
        return self._cas_write(
            row, now, "plan_change_cancelled", f"{row['scheduled_plan']} no longer scheduled",
            scheduled_plan=None,
            scheduled_change_at=None,
        )

    def set_cancel_at_period_end(self, user_id: str, cancel: bool, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        row = self._require_subscription(user_id)
        if bool(row["cancel_at_period_end"]) == cancel:
            return row

        client = self._client_factory(row["provider"])
        client.set_cancel_at_period_end(row["provider_subscription_id"], cancel)
        return self._cas_write(
            row, now,
            "renewal_cancelled" if cancel else "renewal_resumed",
            f"cancel_at_period_end={cancel}",
            cancel_at_period_end=cancel,
        )


plan_change_service = PlanChangeService()
