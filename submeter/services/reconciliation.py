"""
Reconciliation
==============

Operator-side maintenance of the idempotency ledger:

- prune_markers(): drop markers older than the retention window
  (SUBMETER_IDEMPOTENCY_RETENTION_DAYS). Runs periodically from the
  application lifespan and on demand from the admin API.
- unresolved(): events acknowledged without being applied.
- replay(): re-apply one of them (delegates to the webhook service).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from submeter.config import Settings, settings
from submeter.core.async_utils import run_sync
from submeter.models.billing import utcnow
from submeter.services.idempotency_ledger import IdempotencyLedger, idempotency_ledger
from submeter.services.webhook_service import WebhookOutcome, WebhookService, webhook_service

logger = logging.getLogger(__name__)


class Reconciliation:
    def __init__(
        self,
        ledger: IdempotencyLedger = idempotency_ledger,
        webhooks: WebhookService = webhook_service,
        cfg: Settings = settings,
    ) -> None:
        self.ledger = ledger
        self.webhooks = webhooks
        self.settings = cfg

    def retention_cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.settings.idempotency_retention_days)

    def prune_markers(self, now: Optional[datetime] = None) -> int:
        return self.ledger.prune(self.retention_cutoff(now))

    def unresolved(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.ledger.list_unresolved(limit)

    def replay(self, provider: str, event_id: str, user_id: Optional[str] = None) -> WebhookOutcome:
        return self.webhooks.replay(provider, event_id, user_id=user_id)


reconciliation = Reconciliation()


async def marker_prune_loop() -> None:
    """Background task: prune expired idempotency markers periodically."""
    interval = settings.marker_prune_interval_s
    while True:
        try:
            await run_sync(reconciliation.prune_markers)
        except Exception as exc:
            logger.error("Marker prune failed: %s", exc)
        await asyncio.sleep(interval)
