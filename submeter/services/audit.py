"""Append-only subscription transition history."""

from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Connection

from submeter.models.billing import audit_table, utcnow


def record_audit(
    conn: Connection,
    *,
    user_id: str,
    source: str,
    action: str,
    subscription_id: Optional[int] = None,
    actor: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    detail: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    conn.execute(
        audit_table.insert().values(
            subscription_id=subscription_id,
            user_id=user_id,
            source=source,
            actor=actor,
            action=action,
            from_status=from_status,
            to_status=to_status,
            detail=detail[:512] if detail else None,
            created_at=now or utcnow(),
        )
    )
