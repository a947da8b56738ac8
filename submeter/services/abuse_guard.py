"""
Abuse Guard
===========

Fair-use velocity check, independent of the monthly quota. Counts
admitted units (usage_events) in a trailing window, 24 hours by default:

    count >= SUBMETER_ABUSE_SUSPEND_THRESHOLD (150)  → suspend
    count >= SUBMETER_ABUSE_ALERT_THRESHOLD   (50)   → alert (logged, audited once per window)

Suspension overrides provider state: live rows of the user move to
status = suspended while provider_status keeps tracking provider events.
Only an operator can clear it (clear_suspension), which restores
provider_status. Every guard-driven change is audited with
source = abuse_guard; clearance with source = operator.

An optional minimum interval between consumptions
(SUBMETER_CONSUME_COOLDOWN_SECONDS, 0 = off) is enforced here too.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import sqlalchemy as sa

from submeter.config import Settings, settings
from submeter.core.database import _sqlite_retry, get_engine
from submeter.models.billing import (
    AuditSource,
    SubscriptionStatus,
    audit_table,
    subscriptions_table,
    usage_events_table,
    utcnow,
)
from submeter.services.audit import record_audit

logger = logging.getLogger(__name__)

SUSPENDED = SubscriptionStatus.SUSPENDED.value
_SUSPENDABLE = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.PAUSED.value,
)


class VelocityDecision(str, Enum):
    OK = "ok"
    ALERT = "alert"
    SUSPEND = "suspend"


def check_velocity(window_events: int, alert_threshold: int, suspend_threshold: int) -> VelocityDecision:
    if suspend_threshold <= alert_threshold:
        raise ValueError("suspend threshold must be strictly higher than the alert threshold")
    if window_events >= suspend_threshold:
        return VelocityDecision.SUSPEND
    if window_events >= alert_threshold:
        return VelocityDecision.ALERT
    return VelocityDecision.OK


class AbuseGuard:
    def __init__(self, engine_factory=get_engine, cfg: Settings = settings) -> None:
        self._engine_factory = engine_factory
        self.settings = cfg

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.settings.abuse_window_hours)

    def _window_start(self, conn, user_id: str, now: datetime) -> datetime:
        """Trailing window start, never earlier than the last operator clearance."""
        start = now - self.window
        a = audit_table
        cleared = conn.execute(
            sa.select(sa.func.max(a.c.created_at)).where(
                a.c.user_id == user_id,
                a.c.source == AuditSource.OPERATOR.value,
                a.c.action == "suspension_cleared",
            )
        ).scalar()
        return max(start, cleared) if cleared else start

    def window_count(self, user_id: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        u = usage_events_table
        with self._engine_factory().connect() as conn:
            since = self._window_start(conn, user_id, now)
            return conn.execute(
                sa.select(sa.func.count()).select_from(u).where(
                    u.c.user_id == user_id, u.c.consumed_at > since, u.c.consumed_at <= now
                )
            ).scalar_one()

    def evaluate(self, user_id: str, now: Optional[datetime] = None) -> VelocityDecision:
        now = now or utcnow()
        count = self.window_count(user_id, now)
        decision = check_velocity(
            count, self.settings.abuse_alert_threshold, self.settings.abuse_suspend_threshold
        )
        if decision is VelocityDecision.SUSPEND:
            self.suspend(user_id, f"{count} units in {self.settings.abuse_window_hours}h", now)
        elif decision is VelocityDecision.ALERT:
            self._alert(user_id, count, now)
        return decision

    def _alert(self, user_id: str, count: int, now: datetime) -> None:
        a = audit_table

        def _do() -> bool:
            with self._engine_factory().begin() as conn:
                already = conn.execute(
                    sa.select(a.c.id).where(
                        a.c.user_id == user_id,
                        a.c.action == "velocity_alert",
                        a.c.created_at > now - self.window,
                    ).limit(1)
                ).first()
                if already:
                    return False
                record_audit(
                    conn,
                    user_id=user_id,
                    source=AuditSource.ABUSE_GUARD.value,
                    actor="abuse_guard",
                    action="velocity_alert",
                    detail=f"{count} units in {self.settings.abuse_window_hours}h",
                    now=now,
                )
                return True

        if _sqlite_retry(_do):
            logger.warning("velocity_alert", extra={"user_id": user_id, "window_count": count})

    def suspend(self, user_id: str, reason: str, now: Optional[datetime] = None) -> int:
        """Force every live row of the user into suspended. Returns rows changed."""
        now = now or utcnow()
        t = subscriptions_table

        def _do() -> int:
            with self._engine_factory().begin() as conn:
                rows = conn.execute(
                    sa.select(t.c.id, t.c.status).where(t.c.user_id == user_id, t.c.status.in_(_SUSPENDABLE))
                ).fetchall()
                changed = 0
                for row in rows:
                    result = conn.execute(
                        t.update()
                        .where(t.c.id == row.id, t.c.status == row.status)
                        .values(status=SUSPENDED, suspended_at=now, suspension_reason=reason[:255], updated_at=now)
                    )
                    if result.rowcount != 1:
                        continue
                    changed += 1
                    record_audit(
                        conn,
                        subscription_id=row.id,
                        user_id=user_id,
                        source=AuditSource.ABUSE_GUARD.value,
                        actor="abuse_guard",
                        action="suspended",
                        from_status=row.status,
                        to_status=SUSPENDED,
                        detail=reason,
                        now=now,
                    )
                return changed

        changed = _sqlite_retry(_do)
        if changed:
            logger.warning("user_suspended", extra={"user_id": user_id, "rows": changed, "reason": reason})
        return changed

    def clear_suspension(self, user_id: str, operator: str, now: Optional[datetime] = None) -> int:
        """Restore provider_status on every suspended row of the user."""
        now = now or utcnow()
        t = subscriptions_table

        def _do() -> int:
            with self._engine_factory().begin() as conn:
                rows = conn.execute(
                    sa.select(t.c.id, t.c.provider_status).where(t.c.user_id == user_id, t.c.status == SUSPENDED)
                ).fetchall()
                for row in rows:
                    conn.execute(
                        t.update()
                        .where(t.c.id == row.id)
                        .values(
                            status=row.provider_status,
                            suspended_at=None,
                            suspension_reason=None,
                            updated_at=now,
                        )
                    )
                    record_audit(
                        conn,
                        subscription_id=row.id,
                        user_id=user_id,
                        source=AuditSource.OPERATOR.value,
                        actor=operator,
                        action="suspension_cleared",
                        from_status=SUSPENDED,
                        to_status=row.provider_status,
                        now=now,
                    )
                return len(rows)

        restored = _sqlite_retry(_do)
        logger.info("suspension_cleared", extra={"user_id": user_id, "rows": restored, "operator": operator})
        return restored

    def cooldown_remaining(self, user_id: str, now: Optional[datetime] = None) -> float:
        """Seconds until the user may consume again; 0 when allowed."""
        cooldown = self.settings.consume_cooldown_seconds
        if cooldown <= 0:
            return 0.0
        now = now or utcnow()
        u = usage_events_table
        with self._engine_factory().connect() as conn:
            last = conn.execute(
                sa.select(sa.func.max(u.c.consumed_at)).where(u.c.user_id == user_id)
            ).scalar()
        if last is None:
            return 0.0
        return max(0.0, cooldown - (now - last).total_seconds())


abuse_guard = AbuseGuard()
