"""
Usage Meter
===========

Admission control for "consume one unit". The store is the only source of
truth; there are no in-process counters.

ADMISSION (normal path), a single conditional UPDATE:

    UPDATE subscriptions SET usage_count = usage_count + 1
     WHERE id = :id AND status = 'active'
       AND usage_count < usage_limit
       AND last_reset_at = :observed
       AND (period_end IS NULL OR period_end > :now)

ROLLOVER (lazy period/quota reset), folded into admission:

    UPDATE subscriptions SET usage_count = 1, period_start = ..., period_end = ...,
           last_reset_at = :new_anchor
     WHERE id = :id AND status = 'active' AND last_reset_at = :observed
       AND usage_limit > 0

Both are compare-and-set on last_reset_at: if two requests race across a
boundary only one rollover UPDATE matches; the loser re-reads, sees the new
anchor and takes the normal path. The snapshot read happens on its own
short-lived connection and only chooses which statement to run; the
statement itself re-checks every condition.

CONSUMPTION ORDER for a user: non-expired pay-per-use grants with balance
(least remaining first, then oldest), then the active recurring plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa

from submeter.core.database import _sqlite_retry, get_engine
from submeter.core.errors import SubmeterError
from submeter.models.billing import (
    AuditSource,
    SubscriptionStatus,
    subscriptions_table,
    usage_events_table,
    utcnow,
)
from submeter.services.audit import record_audit
from submeter.services.plan_catalog import PAY_PER_USE, RECURRING_PLANS, PlanCatalog, plan_catalog

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
SUSPENDED = SubscriptionStatus.SUSPENDED.value

MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    remaining: int
    subscription_id: Optional[int] = None
    reason: Optional[str] = None
    rolled_over: bool = False


@dataclass(frozen=True)
class Rollover:
    period_start: datetime
    period_end: Optional[datetime]
    anchor: datetime
    kind: str  # "period" or "quota"


@dataclass
class UsageSummary:
    user_id: str
    plan: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[int] = None
    usage_count: int = 0
    usage_limit: int = 0
    remaining: int = 0
    next_reset_at: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    scheduled_plan: Optional[str] = None
    pay_per_use_grants: int = 0
    pay_per_use_remaining: int = 0

    @property
    def total_remaining(self) -> int:
        return self.remaining + self.pay_per_use_remaining


def _advance(start: datetime, step: timedelta, now: datetime) -> datetime:
    """Start of the step-aligned window (anchored at *start*) that contains *now*."""
    if now < start:
        return start
    return start + step * ((now - start) // step)


class UsageMeter:
    """Atomic admission with lazy rollover."""

    def __init__(self, engine_factory=get_engine, catalog: PlanCatalog = plan_catalog) -> None:
        self._engine_factory = engine_factory
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Rollover decision
    # ------------------------------------------------------------------

    def plan_rollover(self, row: Dict[str, Any], now: datetime) -> Optional[Rollover]:
        """Return the rollover due for *row* at *now*, or None."""
        spec = self.catalog.get(row["plan"])
        if spec is None or not spec.recurring:
            return None

        period_end = row["period_end"]
        if period_end is not None and now >= period_end:
            if row["cancel_at_period_end"]:
                return None
            start = _advance(period_end, spec.billing_interval, now)
            return Rollover(start, start + spec.billing_interval, start, "period")

        if spec.quota_interval and now >= row["last_reset_at"] + spec.quota_interval:
            anchor = _advance(row["last_reset_at"], spec.quota_interval, now)
            return Rollover(row["period_start"], period_end, anchor, "quota")
        return None

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    def _snapshot(self, subscription_id: int) -> Optional[Dict[str, Any]]:
        t = subscriptions_table
        with self._engine_factory().connect() as conn:
            row = conn.execute(sa.select(t).where(t.c.id == subscription_id)).first()
        return dict(row._mapping) if row else None

    def owner_of(self, subscription_id: int) -> Optional[str]:
        row = self._snapshot(subscription_id)
        return row["user_id"] if row else None

    def _admit(self, row: Dict[str, Any], now: datetime, rollover: Optional[Rollover]) -> Optional[Tuple[int, int]]:
        """Run the conditional UPDATE; returns (usage_count, usage_limit) or None if it lost."""
        t = subscriptions_table
        if rollover is None:
            stmt = (
                t.update()
                .where(
                    t.c.id == row["id"],
                    t.c.status == ACTIVE,
                    t.c.usage_count < t.c.usage_limit,
                    t.c.last_reset_at == row["last_reset_at"],
                    sa.or_(t.c.period_end.is_(None), t.c.period_end > now),
                )
                .values(usage_count=t.c.usage_count + 1, updated_at=now)
            )
        else:
            conditions = [
                t.c.id == row["id"],
                t.c.status == ACTIVE,
                t.c.last_reset_at == row["last_reset_at"],
                t.c.usage_limit > 0,
            ]
            if rollover.kind == "period":
                conditions.append(sa.not_(t.c.cancel_at_period_end))
            stmt = (
                t.update()
                .where(*conditions)
                .values(
                    usage_count=1,
                    period_start=rollover.period_start,
                    period_end=rollover.period_end,
                    last_reset_at=rollover.anchor,
                    updated_at=now,
                )
            )
        stmt = stmt.returning(t.c.usage_count, t.c.usage_limit)

        def _do() -> Optional[Tuple[int, int]]:
            with self._engine_factory().begin() as conn:
                updated = conn.execute(stmt).first()
                if updated is None:
                    return None
                conn.execute(
                    usage_events_table.insert().values(
                        user_id=row["user_id"], subscription_id=row["id"], consumed_at=now
                    )
                )
                if rollover is not None:
                    record_audit(
                        conn,
                        subscription_id=row["id"],
                        user_id=row["user_id"],
                        source=AuditSource.METER.value,
                        actor="usage_meter",
                        action=f"{rollover.kind}_rollover",
                        from_status=ACTIVE,
                        to_status=ACTIVE,
                        detail=f"usage {row['usage_count']} reset, new anchor {rollover.anchor.isoformat()}",
                        now=now,
                    )
                return updated.usage_count, updated.usage_limit

        return _sqlite_retry(_do)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def try_consume(self, subscription_id: int, now: Optional[datetime] = None) -> ConsumeResult:
        """Atomically consume one unit from one subscription row."""
        now = now or utcnow()
        for _ in range(MAX_ATTEMPTS):
            row = self._snapshot(subscription_id)
            if row is None:
                return ConsumeResult(False, 0, subscription_id, "not_found")

            if row["usage_count"] > row["usage_limit"]:
                logger.error(
                    "usage_overage_detected",
                    extra={
                        "subscription_id": row["id"],
                        "user_id": row["user_id"],
                        "usage_count": row["usage_count"],
                        "usage_limit": row["usage_limit"],
                    },
                )

            if row["status"] != ACTIVE:
                reason = "suspended" if row["status"] == SUSPENDED else "not_active"
                return ConsumeResult(False, 0, row["id"], reason)
            if row["usage_limit"] <= 0:
                return ConsumeResult(False, 0, row["id"], "quota_exceeded")

            rollover = self.plan_rollover(row, now)
            if rollover is None:
                if row["period_end"] is not None and row["period_end"] <= now:
                    reason = "period_ended" if row["plan"] in RECURRING_PLANS else "expired"
                    return ConsumeResult(False, 0, row["id"], reason)
                if row["usage_count"] >= row["usage_limit"]:
                    return ConsumeResult(False, 0, row["id"], "quota_exceeded")

            admitted = self._admit(row, now, rollover)
            if admitted is None:
                # Lost a race (concurrent admission or rollover); re-read and decide again
                continue

            count, limit = admitted
            if rollover is not None:
                logger.info(
                    "usage_rollover",
                    extra={
                        "subscription_id": row["id"],
                        "user_id": row["user_id"],
                        "kind": rollover.kind,
                        "previous_usage": row["usage_count"],
                    },
                )
            return ConsumeResult(True, max(0, limit - count), row["id"], None, rolled_over=rollover is not None)

        raise SubmeterError(
            "SMT-DB-001",
            detail=f"admission for subscription {subscription_id} did not settle after {MAX_ATTEMPTS} attempts",
        )

    def _candidates(self, user_id: str, now: datetime) -> List[int]:
        t = subscriptions_table
        with self._engine_factory().connect() as conn:
            grants = conn.execute(
                sa.select(t.c.id)
                .where(
                    t.c.user_id == user_id,
                    t.c.plan == PAY_PER_USE,
                    t.c.status == ACTIVE,
                    t.c.usage_count < t.c.usage_limit,
                    sa.or_(t.c.period_end.is_(None), t.c.period_end > now),
                )
                .order_by((t.c.usage_limit - t.c.usage_count).asc(), t.c.id.asc())
            ).scalars().all()
            recurring = conn.execute(
                sa.select(t.c.id)
                .where(t.c.user_id == user_id, t.c.plan.in_(RECURRING_PLANS), t.c.status == ACTIVE)
                .order_by(t.c.id.desc())
            ).scalars().all()
        return list(grants) + list(recurring)

    def _user_suspended(self, user_id: str) -> bool:
        t = subscriptions_table
        with self._engine_factory().connect() as conn:
            return conn.execute(
                sa.select(t.c.id).where(t.c.user_id == user_id, t.c.status == SUSPENDED).limit(1)
            ).first() is not None

    def try_consume_for_user(self, user_id: str, now: Optional[datetime] = None) -> ConsumeResult:
        """Consume one unit from the user's best grant, pay-per-use first."""
        now = now or utcnow()
        last: Optional[ConsumeResult] = None
        for subscription_id in self._candidates(user_id, now):
            result = self.try_consume(subscription_id, now)
            if result.allowed:
                return result
            last = result
        if last is not None:
            return last
        reason = "suspended" if self._user_suspended(user_id) else "no_active_subscription"
        return ConsumeResult(False, 0, None, reason)

    # ------------------------------------------------------------------
    # Read-only summary
    # ------------------------------------------------------------------

    def get_usage(self, user_id: str, now: Optional[datetime] = None) -> UsageSummary:
        """Usage as the next admission would see it (pending rollovers applied)."""
        now = now or utcnow()
        t = subscriptions_table
        with self._engine_factory().connect() as conn:
            rows = [
                dict(r._mapping)
                for r in conn.execute(
                    sa.select(t)
                    .where(t.c.user_id == user_id, t.c.status.in_((ACTIVE, SUSPENDED)))
                    .order_by(t.c.id.desc())
                )
            ]

        summary = UsageSummary(user_id=user_id)
        for row in rows:
            if row["plan"] == PAY_PER_USE:
                if row["status"] == ACTIVE and (row["period_end"] is None or row["period_end"] > now):
                    summary.pay_per_use_grants += 1
                    summary.pay_per_use_remaining += max(0, row["usage_limit"] - row["usage_count"])
                continue
            if summary.subscription_id is not None or row["plan"] not in RECURRING_PLANS:
                continue

            count = row["usage_count"]
            anchor = row["last_reset_at"]
            period_end = row["period_end"]
            rollover = self.plan_rollover(row, now)
            if rollover is not None:
                count, anchor, period_end = 0, rollover.anchor, rollover.period_end

            spec = self.catalog[row["plan"]]
            next_reset = anchor + spec.quota_interval if spec.quota_interval else period_end
            if period_end is not None and next_reset is not None:
                next_reset = min(next_reset, period_end)

            summary.subscription_id = row["id"]
            summary.plan = row["plan"]
            summary.status = row["status"]
            summary.usage_count = count
            summary.usage_limit = row["usage_limit"]
            summary.remaining = max(0, row["usage_limit"] - count) if row["status"] == ACTIVE else 0
            # A subscription ending at period end has no further reset
            summary.next_reset_at = None if row["cancel_at_period_end"] else next_reset
            summary.period_end = period_end
            summary.cancel_at_period_end = bool(row["cancel_at_period_end"])
            summary.scheduled_plan = row["scheduled_plan"]
        return summary


usage_meter = UsageMeter()
