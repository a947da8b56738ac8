"""
Billing Models
==============

SQLModel tables for persistent subscription and metering state:
- Subscription: one row per provider subscription or pay-per-use grant.
- IdempotencyMarker: one row per processed (provider, event_id).
- UsageEvent: one row per admitted unit, feeds the abuse velocity window.
- SubscriptionAudit: append-only transition history.

All timestamps are naive UTC (see utcnow()); SQLite has no timezone
support and comparisons in conditional UPDATEs must match stored values
exactly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

# Stored without tzinfo; values are always naive UTC
NAIVE_DATETIME = DateTime(timezone=False)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUSPENDED = "suspended"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED.value, SubscriptionStatus.FAILED.value})


class AuditSource(str, Enum):
    PROVIDER = "provider"
    ABUSE_GUARD = "abuse_guard"
    METER = "meter"
    USER = "user"
    OPERATOR = "operator"


class MarkerOutcome(str, Enum):
    APPLIED = "applied"
    UNRESOLVED = "unresolved"
    UNHANDLED = "unhandled"
    SKIPPED = "skipped"


class Subscription(SQLModel, table=True):
    """Subscription state for one provider subscription (or one PPU grant)."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("provider", "provider_subscription_id", name="uq_subscriptions_provider_sub"),
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    email: Optional[str] = Field(default=None, nullable=True, max_length=320)
    provider: str = Field(max_length=32)
    provider_subscription_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    provider_customer_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    plan: str = Field(default="free", max_length=32)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=32)
    provider_status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=32)
    period_start: datetime = Field(default_factory=utcnow, sa_type=NAIVE_DATETIME)
    period_end: Optional[datetime] = Field(default=None, nullable=True, sa_type=NAIVE_DATETIME)
    last_reset_at: datetime = Field(default_factory=utcnow, sa_type=NAIVE_DATETIME)
    usage_count: int = Field(default=0)
    usage_limit: int = Field(default=0)
    cancel_at_period_end: bool = Field(default=False)
    cancelled_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=NAIVE_DATETIME)
    scheduled_plan: Optional[str] = Field(default=None, nullable=True, max_length=32)
    scheduled_change_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=NAIVE_DATETIME)
    suspended_at: Optional[datetime] = Field(default=None, nullable=True, sa_type=NAIVE_DATETIME)
    suspension_reason: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=NAIVE_DATETIME)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=NAIVE_DATETIME)

    @property
    def remaining(self) -> int:
        return max(0, self.usage_limit - self.usage_count)


class IdempotencyMarker(SQLModel, table=True):
    """Record that (provider, event_id) has been claimed."""

    __tablename__ = "idempotency_markers"

    provider: str = Field(primary_key=True, max_length=32)
    event_id: str = Field(primary_key=True, max_length=255)
    applied_at: datetime = Field(default_factory=utcnow, index=True, sa_type=NAIVE_DATETIME)
    event_type: Optional[str] = Field(default=None, nullable=True, max_length=128)
    outcome: str = Field(default=MarkerOutcome.APPLIED.value, max_length=32, index=True)
    user_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    detail: Optional[str] = Field(default=None, nullable=True, max_length=512)
    # Raw body, retained only for unresolved events so operators can replay them
    payload: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))


class UsageEvent(SQLModel, table=True):
    """One admitted unit of consumption."""

    __tablename__ = "usage_events"
    __table_args__ = (Index("ix_usage_events_user_consumed", "user_id", "consumed_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=128)
    subscription_id: int = Field(index=True)
    consumed_at: datetime = Field(default_factory=utcnow, sa_type=NAIVE_DATETIME)


class SubscriptionAudit(SQLModel, table=True):
    """Append-only history of subscription transitions."""

    __tablename__ = "subscription_audit"

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: Optional[int] = Field(default=None, nullable=True, index=True)
    user_id: str = Field(index=True, max_length=128)
    source: str = Field(max_length=32)
    actor: Optional[str] = Field(default=None, nullable=True, max_length=128)
    action: str = Field(max_length=64)
    from_status: Optional[str] = Field(default=None, nullable=True, max_length=32)
    to_status: Optional[str] = Field(default=None, nullable=True, max_length=32)
    detail: Optional[str] = Field(default=None, nullable=True, max_length=512)
    created_at: datetime = Field(default_factory=utcnow, sa_type=NAIVE_DATETIME)


subscriptions_table = Subscription.__table__
markers_table = IdempotencyMarker.__table__
usage_events_table = UsageEvent.__table__
audit_table = SubscriptionAudit.__table__
