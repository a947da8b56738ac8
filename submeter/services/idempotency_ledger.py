"""
Idempotency Ledger
==================

Exactly-once gate for provider events. A marker row keyed by
(provider, event_id) is inserted with a dialect-native
``INSERT ... ON CONFLICT DO NOTHING``; the event is ours iff that insert
changed one row. The insert runs on the caller's connection, inside the
same transaction as the state transition it guards, so a failure rolls
back both and the provider's redelivery is processed from scratch.

Markers are never updated except when an operator replays an event that
was acknowledged as unresolved, and are pruned after the retention
window (SUBMETER_IDEMPOTENCY_RETENTION_DAYS, default 90).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from submeter.core.database import _sqlite_retry, get_engine
from submeter.models.billing import MarkerOutcome, markers_table, utcnow

logger = logging.getLogger(__name__)

_DETAIL_MAX = 512


class IdempotencyLedger:
    """Claims, inspects and prunes idempotency markers."""

    def __init__(self, engine_factory=get_engine) -> None:
        self._engine_factory = engine_factory

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def try_claim(
        self,
        conn: Connection,
        provider: str,
        event_id: str,
        *,
        event_type: Optional[str] = None,
        outcome: str = MarkerOutcome.APPLIED.value,
        user_id: Optional[str] = None,
        detail: Optional[str] = None,
        payload: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Insert the marker; True iff this call claimed the event."""
        values = {
            "provider": provider,
            "event_id": event_id,
            "applied_at": now or utcnow(),
            "event_type": event_type,
            "outcome": outcome,
            "user_id": user_id,
            "detail": detail[:_DETAIL_MAX] if detail else None,
            "payload": payload,
        }
        dialect = conn.dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = (
                insert(markers_table)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["provider", "event_id"])
            )
            return conn.execute(stmt).rowcount == 1

        # Other backends: savepoint so a duplicate does not poison the outer transaction
        try:
            with conn.begin_nested():
                conn.execute(markers_table.insert().values(**values))
            return True
        except IntegrityError:
            return False

    def mark_outcome(
        self,
        conn: Connection,
        provider: str,
        event_id: str,
        outcome: str,
        detail: Optional[str] = None,
        payload: Optional[str] = None,
    ) -> None:
        """Record how a claimed event ended. The payload is kept only when given."""
        t = markers_table
        conn.execute(
            t.update()
            .where(t.c.provider == provider, t.c.event_id == event_id)
            .values(
                outcome=outcome,
                detail=detail[:_DETAIL_MAX] if detail else None,
                payload=payload,
            )
        )

    def reclaim_unresolved(self, conn: Connection, provider: str, event_id: str, now: Optional[datetime] = None) -> bool:
        """Take an unresolved marker back for an operator replay; True iff this call won it."""
        t = markers_table
        result = conn.execute(
            t.update()
            .where(
                t.c.provider == provider,
                t.c.event_id == event_id,
                t.c.outcome == MarkerOutcome.UNRESOLVED.value,
            )
            .values(outcome=MarkerOutcome.APPLIED.value, applied_at=now or utcnow())
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, provider: str, event_id: str) -> Optional[Dict[str, Any]]:
        t = markers_table
        with self._engine_factory().connect() as conn:
            row = conn.execute(
                sa.select(t).where(t.c.provider == provider, t.c.event_id == event_id)
            ).first()
        return dict(row._mapping) if row else None

    def is_claimed(self, provider: str, event_id: str) -> bool:
        return self.get(provider, event_id) is not None

    def list_unresolved(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Events acknowledged without being applied, oldest first."""
        t = markers_table
        with self._engine_factory().connect() as conn:
            rows = conn.execute(
                sa.select(
                    t.c.provider, t.c.event_id, t.c.event_type, t.c.user_id,
                    t.c.detail, t.c.applied_at,
                )
                .where(t.c.outcome == MarkerOutcome.UNRESOLVED.value)
                .order_by(t.c.applied_at.asc())
                .limit(limit)
            ).fetchall()
        return [dict(r._mapping) for r in rows]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune(self, older_than: datetime) -> int:
        """Delete markers claimed before *older_than*. Returns the count."""
        t = markers_table

        def _do() -> int:
            with self._engine_factory().begin() as conn:
                return conn.execute(t.delete().where(t.c.applied_at < older_than)).rowcount

        deleted = _sqlite_retry(_do)
        logger.info("idempotency_markers_pruned", extra={"deleted": deleted, "older_than": older_than.isoformat()})
        return deleted


idempotency_ledger = IdempotencyLedger()
