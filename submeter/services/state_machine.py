"""
Subscription State Machine
==========================

Applies canonical BillingEvents to the subscriptions table. Every write
is keyed by (provider, provider_subscription_id) and sets columns to a
value computed from the event, so applying the same event twice
converges on the same row.

TRANSITIONS:
    subscription_activated  → upsert row: active, usage 0, limit from plan,
                              new period; other active recurring rows of
                              the user are superseded (cancelled)
    subscription_renewed    → active, usage 0, period advanced, scheduled
                              plan change applied; a scheduled cancellation
                              whose boundary has passed flips to cancelled;
                              a period whose counter was already reset is
                              not reset again
    subscription_updated    → plan/limit in place, provider status mapped,
                              cancel_at_period_end reflected; a plan that
                              matches a pending scheduled change waits for
                              scheduled_change_at
    subscription_cancelled  → immediate: cancelled; scheduled:
                              cancel_at_period_end = true
    payment_failed          → failed
    payment_succeeded       → pay-per-use grant (separate row)

Rows under an abuse suspension keep status = suspended; provider-driven
changes land in provider_status and are restored when the suspension is
cleared. Terminal rows (cancelled, failed) ignore everything except a
new activation.

The caller owns the transaction: apply() runs on the same connection
that claimed the idempotency marker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from submeter.models.billing import (
    TERMINAL_STATUSES,
    AuditSource,
    MarkerOutcome,
    SubscriptionStatus,
    as_naive_utc,
    subscriptions_table,
)
from submeter.models.events import BillingEvent, EventType
from submeter.services.audit import record_audit
from submeter.services.notification_service import Notification, NotificationKind
from submeter.services.plan_catalog import PAY_PER_USE, RECURRING_PLANS, PlanCatalog, plan_catalog

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
CANCELLED = SubscriptionStatus.CANCELLED.value
FAILED = SubscriptionStatus.FAILED.value
SUSPENDED = SubscriptionStatus.SUSPENDED.value

# Provider status strings → our status
_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAUSED.value,
    "on_hold": SubscriptionStatus.PAUSED.value,
    "canceled": CANCELLED,
    "cancelled": CANCELLED,
    "incomplete_expired": CANCELLED,
    "expired": CANCELLED,
    "failed": FAILED,
}

# Statuses that still count as "the user's current subscription"
_LIVE_STATUSES = (ACTIVE, SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.PAUSED.value)


def normalize_status(provider_status: Optional[str]) -> Optional[str]:
    if not provider_status:
        return None
    return _STATUS_MAP.get(provider_status.lower())


@dataclass
class TransitionResult:
    action: str
    subscription_id: Optional[int] = None
    user_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    notifications: List[Notification] = field(default_factory=list)
    detail: Optional[str] = None

    @property
    def outcome(self) -> str:
        """Idempotency marker outcome for this result."""
        if self.action in ("unresolved", "unhandled", "skipped"):
            return MarkerOutcome(self.action).value
        return MarkerOutcome.APPLIED.value


class SubscriptionStateMachine:
    """Applies BillingEvents to subscription rows."""

    def __init__(self, catalog: PlanCatalog = plan_catalog) -> None:
        self.catalog = catalog
        self._handlers = {
            EventType.SUBSCRIPTION_ACTIVATED: self._activate,
            EventType.SUBSCRIPTION_RENEWED: self._renew,
            EventType.SUBSCRIPTION_UPDATED: self._update,
            EventType.SUBSCRIPTION_CANCELLED: self._cancel,
            EventType.PAYMENT_FAILED: self._payment_failed,
            EventType.PAYMENT_SUCCEEDED: self._payment_succeeded,
        }

    def apply(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        if not event.is_handled:
            return TransitionResult("unhandled", detail=event.provider_event_type)
        if not event.is_resolvable:
            return TransitionResult("unresolved", detail="event carries no user_id")

        result = self._handlers[event.event_type](conn, event, now)
        result.user_id = result.user_id or event.user_id
        return result

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _find(self, conn: Connection, event: BillingEvent) -> Optional[Dict[str, Any]]:
        if not event.provider_subscription_id:
            return None
        t = subscriptions_table
        row = conn.execute(
            sa.select(t).where(
                t.c.provider == event.provider,
                t.c.provider_subscription_id == event.provider_subscription_id,
            )
        ).first()
        return dict(row._mapping) if row else None

    def _write(self, conn: Connection, row_id: int, now: datetime, **values: Any) -> None:
        t = subscriptions_table
        conn.execute(t.update().where(t.c.id == row_id).values(updated_at=now, **values))

    def _user_suspended(self, conn: Connection, user_id: str) -> bool:
        t = subscriptions_table
        return conn.execute(
            sa.select(t.c.id).where(t.c.user_id == user_id, t.c.status == SUSPENDED).limit(1)
        ).first() is not None

    def _set_status(self, row: Dict[str, Any], status: str) -> Dict[str, Any]:
        """Status columns for a provider-driven status change."""
        if row["status"] == SUSPENDED:
            return {"provider_status": status}
        return {"status": status, "provider_status": status}

    def _audit(self, conn: Connection, event: BillingEvent, result: TransitionResult, now: datetime) -> None:
        record_audit(
            conn,
            subscription_id=result.subscription_id,
            user_id=result.user_id or event.user_id or "",
            source=AuditSource.PROVIDER.value,
            actor=event.provider,
            action=result.action,
            from_status=result.from_status,
            to_status=result.to_status,
            detail=result.detail or f"{event.provider_event_type} {event.event_id}",
            now=now,
        )

    def _missing_row(self, event: BillingEvent) -> TransitionResult:
        # Out-of-order delivery: keep the payload so an operator can replay it
        return TransitionResult(
            "unresolved",
            detail=f"no {event.provider} subscription {event.provider_subscription_id!r}",
        )

    def _terminal(self, row: Dict[str, Any], event: BillingEvent) -> TransitionResult:
        return TransitionResult(
            "skipped",
            subscription_id=row["id"],
            user_id=row["user_id"],
            from_status=row["status"],
            to_status=row["status"],
            detail=f"{event.event_type.value} ignored for {row['status']} subscription",
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _activate(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        spec = self.catalog.get(event.plan)
        if spec is None or not spec.recurring:
            return TransitionResult("unresolved", detail=f"activation for unknown or non-recurring plan {event.plan!r}")
        if not event.provider_subscription_id:
            return TransitionResult("unresolved", detail="activation without provider subscription id")

        row = self._find(conn, event)
        if row and row["status"] in (ACTIVE, SUSPENDED) and row["provider_status"] == ACTIVE:
            return TransitionResult(
                "skipped",
                subscription_id=row["id"],
                from_status=row["status"],
                to_status=row["status"],
                detail="subscription already active",
            )

        period_start = as_naive_utc(event.period_start) or now
        period_end = as_naive_utc(event.period_end) or period_start + spec.billing_interval
        status = SUSPENDED if self._user_suspended(conn, event.user_id) else ACTIVE
        values = {
            "user_id": event.user_id,
            "provider": event.provider,
            "provider_subscription_id": event.provider_subscription_id,
            "provider_customer_id": event.provider_customer_id or (row or {}).get("provider_customer_id"),
            "email": event.customer_email or (row or {}).get("email"),
            "plan": spec.name,
            "status": status,
            "provider_status": ACTIVE,
            "period_start": period_start,
            "period_end": period_end,
            "last_reset_at": now,
            "usage_count": 0,
            "usage_limit": spec.usage_limit,
            "cancel_at_period_end": False,
            "cancelled_at": None,
            "scheduled_plan": None,
            "scheduled_change_at": None,
        }
        if status == SUSPENDED:
            values["suspended_at"] = now
            values["suspension_reason"] = "user under abuse suspension"

        t = subscriptions_table
        if row:
            self._write(conn, row["id"], now, **values)
            row_id = row["id"]
        else:
            row_id = conn.execute(
                t.insert().values(created_at=now, updated_at=now, **values)
            ).inserted_primary_key[0]

        self._supersede(conn, event, row_id, now)

        result = TransitionResult(
            "activated",
            subscription_id=row_id,
            from_status=row["status"] if row else None,
            to_status=status,
        )
        if values["email"]:
            result.notifications.append(
                Notification(
                    NotificationKind.SUBSCRIPTION_CONFIRMED,
                    values["email"],
                    user_id=event.user_id,
                    context={"plan": spec.name, "usage_limit": spec.usage_limit},
                )
            )
        self._audit(conn, event, result, now)
        return result

    def _supersede(self, conn: Connection, event: BillingEvent, keep_id: int, now: datetime) -> None:
        """Cancel every other live recurring row of the user."""
        t = subscriptions_table
        others = conn.execute(
            sa.select(t.c.id, t.c.status, t.c.provider, t.c.provider_subscription_id).where(
                t.c.user_id == event.user_id,
                t.c.id != keep_id,
                t.c.plan.in_(RECURRING_PLANS),
                sa.or_(
                    t.c.status.in_(_LIVE_STATUSES),
                    sa.and_(t.c.status == SUSPENDED, t.c.provider_status.in_(_LIVE_STATUSES)),
                ),
            )
        ).fetchall()
        for other in others:
            values = {"provider_status": CANCELLED, "cancelled_at": now}
            if other.status != SUSPENDED:
                values["status"] = CANCELLED
            self._write(conn, other.id, now, **values)
            record_audit(
                conn,
                subscription_id=other.id,
                user_id=event.user_id,
                source=AuditSource.PROVIDER.value,
                actor=event.provider,
                action="superseded",
                from_status=other.status,
                to_status=values.get("status", other.status),
                detail=f"superseded by {event.provider} {event.provider_subscription_id}",
                now=now,
            )
            logger.info(
                "subscription_superseded",
                extra={
                    "user_id": event.user_id,
                    "subscription_id": other.id,
                    "superseded_provider": other.provider,
                    "superseded_by": event.provider_subscription_id,
                },
            )

    def _renewal_period(self, event: BillingEvent, interval, now: datetime) -> Tuple[datetime, datetime]:
        """Period the renewal event opens, derived from the event alone."""
        period_start = as_naive_utc(event.period_start) or as_naive_utc(event.occurred_at) or now
        period_end = as_naive_utc(event.period_end) or period_start + interval
        if period_end <= now:
            # Stale event: the window of the same cadence that contains now
            period_start = period_start + interval * ((now - period_start) // interval)
            period_end = period_start + interval
        return period_start, period_end

    def _renew(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        row = self._find(conn, event)
        if row is None:
            return self._missing_row(event)
        if row["status"] in TERMINAL_STATUSES:
            return self._terminal(row, event)

        result = TransitionResult(
            "renewed", subscription_id=row["id"], user_id=row["user_id"], from_status=row["status"]
        )

        # Scheduled cancellation whose boundary has been reached
        if row["cancel_at_period_end"] and row["period_end"] is not None and now >= row["period_end"]:
            values = {**self._set_status(row, CANCELLED), "cancelled_at": now, "cancel_at_period_end": False}
            self._write(conn, row["id"], now, **values)
            result.action = "cancelled"
            result.to_status = values.get("status", row["status"])
            result.detail = "scheduled cancellation reached period end"
            self._audit(conn, event, result, now)
            return result

        plan = row["plan"]
        scheduled_applied = False
        if row["scheduled_plan"] and (row["scheduled_change_at"] is None or now >= row["scheduled_change_at"]):
            plan = row["scheduled_plan"]
            scheduled_applied = True
        elif self.catalog.is_recurring(event.plan):
            plan = event.plan
        spec = self.catalog[plan]

        period_start, period_end = self._renewal_period(event, spec.billing_interval, now)
        values: Dict[str, Any] = {**self._set_status(row, ACTIVE), "plan": plan, "usage_limit": spec.usage_limit}
        if scheduled_applied:
            values["scheduled_plan"] = None
            values["scheduled_change_at"] = None

        # Counter already reset for this period (same event again, or the meter rolled over first)
        already_reset = (
            row["period_end"] is not None
            and row["period_end"] >= period_end
            and row["last_reset_at"] is not None
            and row["last_reset_at"] >= period_start
        )
        if already_reset:
            if not scheduled_applied and plan == row["plan"]:
                result.action = "skipped"
                result.to_status = row["status"]
                result.detail = f"period ending {row['period_end'].isoformat()} already renewed"
                return result
        else:
            values.update(
                usage_count=0,
                last_reset_at=max(now, period_start),
                period_start=period_start,
                period_end=period_end,
                cancel_at_period_end=False,
            )
        self._write(conn, row["id"], now, **values)

        result.to_status = values.get("status", row["status"])
        if scheduled_applied:
            result.detail = f"scheduled change {row['plan']} -> {plan} applied"
        self._audit(conn, event, result, now)
        return result

    def _update(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        row = self._find(conn, event)
        if row is None:
            return self._missing_row(event)
        if row["status"] in TERMINAL_STATUSES:
            return self._terminal(row, event)

        values: Dict[str, Any] = {}
        # The provider already carries our own period-end change; it lands on renewal
        pending = (
            event.plan == row["scheduled_plan"]
            and row["scheduled_change_at"] is not None
            and now < row["scheduled_change_at"]
        )
        if self.catalog.is_recurring(event.plan) and event.plan != row["plan"] and not pending:
            values["plan"] = event.plan
            values["usage_limit"] = self.catalog[event.plan].usage_limit
            if row["scheduled_plan"] == event.plan:
                values["scheduled_plan"] = None
                values["scheduled_change_at"] = None

        status = normalize_status(event.status)
        if status:
            values.update(self._set_status(row, status))
            if status == CANCELLED:
                values["cancelled_at"] = now

        if event.cancel_at_period_end is not None:
            values["cancel_at_period_end"] = event.cancel_at_period_end
        if event.period_start:
            values["period_start"] = as_naive_utc(event.period_start)
        if event.period_end:
            values["period_end"] = as_naive_utc(event.period_end)

        if values:
            self._write(conn, row["id"], now, **values)

        result = TransitionResult(
            "updated",
            subscription_id=row["id"],
            user_id=row["user_id"],
            from_status=row["status"],
            to_status=values.get("status", row["status"]),
            detail=", ".join(sorted(values)) or "no changes",
        )
        self._audit(conn, event, result, now)
        return result

    def _cancel(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        row = self._find(conn, event)
        if row is None:
            return self._missing_row(event)
        if row["status"] in TERMINAL_STATUSES:
            return self._terminal(row, event)

        result = TransitionResult(
            "cancelled", subscription_id=row["id"], user_id=row["user_id"], from_status=row["status"]
        )
        if event.cancel_immediately:
            values = {**self._set_status(row, CANCELLED), "cancelled_at": now, "cancel_at_period_end": False}
            access_until = None
        else:
            values = {"cancel_at_period_end": True}
            if event.period_end:
                values["period_end"] = as_naive_utc(event.period_end)
            access_until = values.get("period_end") or row["period_end"]
            result.action = "cancel_scheduled"
        self._write(conn, row["id"], now, **values)
        result.to_status = values.get("status", row["status"])

        email = row["email"] or event.customer_email
        if email:
            result.notifications.append(
                Notification(
                    NotificationKind.SUBSCRIPTION_CANCELLED,
                    email,
                    user_id=row["user_id"],
                    context={
                        "plan": row["plan"],
                        "access_until": access_until.date().isoformat() if access_until else None,
                    },
                )
            )
        self._audit(conn, event, result, now)
        return result

    def _payment_failed(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        row = self._find(conn, event)
        if row is None:
            return self._missing_row(event)
        if row["status"] in TERMINAL_STATUSES:
            return self._terminal(row, event)

        values = self._set_status(row, FAILED)
        self._write(conn, row["id"], now, **values)
        result = TransitionResult(
            "payment_failed",
            subscription_id=row["id"],
            user_id=row["user_id"],
            from_status=row["status"],
            to_status=values.get("status", row["status"]),
        )
        email = row["email"] or event.customer_email
        if email:
            result.notifications.append(
                Notification(NotificationKind.PAYMENT_FAILED, email, user_id=row["user_id"], context={"plan": row["plan"]})
            )
        self._audit(conn, event, result, now)
        return result

    def _payment_succeeded(self, conn: Connection, event: BillingEvent, now: datetime) -> TransitionResult:
        spec = self.catalog.get(event.plan)
        if spec is None:
            return TransitionResult("unresolved", detail=f"payment for unknown plan {event.plan!r}")
        if spec.name != PAY_PER_USE:
            return TransitionResult("skipped", detail=f"one-shot payment for {spec.name} plan ignored")
        if not event.provider_subscription_id:
            return TransitionResult("unresolved", detail="payment without transaction id")

        row = self._find(conn, event)
        if row is not None:
            return TransitionResult(
                "skipped",
                subscription_id=row["id"],
                from_status=row["status"],
                to_status=row["status"],
                detail="grant already exists for this transaction",
            )

        status = SUSPENDED if self._user_suspended(conn, event.user_id) else ACTIVE
        expires_at = now + spec.expires_after if spec.expires_after else None
        values = {
            "user_id": event.user_id,
            "provider": event.provider,
            "provider_subscription_id": event.provider_subscription_id,
            "provider_customer_id": event.provider_customer_id,
            "email": event.customer_email,
            "plan": spec.name,
            "status": status,
            "provider_status": ACTIVE,
            "period_start": now,
            "period_end": expires_at,
            "last_reset_at": now,
            "usage_count": 0,
            "usage_limit": spec.usage_limit,
            "created_at": now,
            "updated_at": now,
        }
        if status == SUSPENDED:
            values["suspended_at"] = now
            values["suspension_reason"] = "user under abuse suspension"
        row_id = conn.execute(subscriptions_table.insert().values(**values)).inserted_primary_key[0]

        result = TransitionResult("grant_created", subscription_id=row_id, to_status=status)
        if event.customer_email:
            result.notifications.append(
                Notification(
                    NotificationKind.PURCHASE_CONFIRMED,
                    event.customer_email,
                    user_id=event.user_id,
                    context={
                        "plan": spec.name,
                        "usage_limit": spec.usage_limit,
                        "expires_at": expires_at.date().isoformat() if expires_at else None,
                    },
                )
            )
        self._audit(conn, event, result, now)
        return result


state_machine = SubscriptionStateMachine()
