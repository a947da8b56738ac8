"""Initial submeter tables: subscriptions, idempotency markers, usage events, audit

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("plan", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("provider_status", sa.String(32), nullable=False),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=True),
        sa.Column("last_reset_at", sa.DateTime, nullable=False),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("usage_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("cancelled_at", sa.DateTime, nullable=True),
        sa.Column("scheduled_plan", sa.String(32), nullable=True),
        sa.Column("scheduled_change_at", sa.DateTime, nullable=True),
        sa.Column("suspended_at", sa.DateTime, nullable=True),
        sa.Column("suspension_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("provider", "provider_subscription_id", name="uq_subscriptions_provider_sub"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_user_status", "subscriptions", ["user_id", "status"])

    op.create_table(
        "idempotency_markers",
        sa.Column("provider", sa.String(32), primary_key=True),
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("applied_at", sa.DateTime, nullable=False),
        sa.Column("event_type", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False, server_default="applied"),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("detail", sa.String(512), nullable=True),
        sa.Column("payload", sa.Text, nullable=True),
    )
    op.create_index("ix_idempotency_markers_applied_at", "idempotency_markers", ["applied_at"])
    op.create_index("ix_idempotency_markers_outcome", "idempotency_markers", ["outcome"])

    op.create_table(
        "usage_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("subscription_id", sa.Integer, nullable=False),
        sa.Column("consumed_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_usage_events_subscription_id", "usage_events", ["subscription_id"])
    op.create_index("ix_usage_events_user_consumed", "usage_events", ["user_id", "consumed_at"])

    op.create_table(
        "subscription_audit",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("subscription_id", sa.Integer, nullable=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("actor", sa.String(128), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=True),
        sa.Column("detail", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_subscription_audit_subscription_id", "subscription_audit", ["subscription_id"])
    op.create_index("ix_subscription_audit_user_id", "subscription_audit", ["user_id"])


def downgrade() -> None:
    op.drop_table("subscription_audit")
    op.drop_table("usage_events")
    op.drop_table("idempotency_markers")
    op.drop_table("subscriptions")
