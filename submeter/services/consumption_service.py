"""
Consumption orchestration: abuse checks, then atomic admission.

    1. velocity check (may suspend the user and deny)
    2. optional cooldown between consumptions
    3. Usage Meter admission (pay-per-use grants first)
"""

import logging
from datetime import datetime
from typing import Optional

from submeter.models.billing import utcnow
from submeter.services.abuse_guard import AbuseGuard, VelocityDecision, abuse_guard
from submeter.services.usage_meter import ConsumeResult, UsageMeter, usage_meter

logger = logging.getLogger(__name__)


class ConsumptionService:
    def __init__(self, meter: UsageMeter = usage_meter, guard: AbuseGuard = abuse_guard) -> None:
        self.meter = meter
        self.guard = guard

    def _precheck(self, user_id: str, now: datetime) -> Optional[ConsumeResult]:
        if self.guard.evaluate(user_id, now) is VelocityDecision.SUSPEND:
            return ConsumeResult(False, 0, None, "suspended")
        wait = self.guard.cooldown_remaining(user_id, now)
        if wait > 0:
            return ConsumeResult(False, 0, None, "cooldown")
        return None

    def consume(self, user_id: str, now: Optional[datetime] = None) -> ConsumeResult:
        """Consume one unit for *user_id* from their best grant."""
        now = now or utcnow()
        result = self._precheck(user_id, now) or self.meter.try_consume_for_user(user_id, now)
        self._log(user_id, result)
        return result

    def consume_subscription(self, user_id: str, subscription_id: int, now: Optional[datetime] = None) -> ConsumeResult:
        """Consume one unit from a specific row owned by *user_id*."""
        now = now or utcnow()
        if self.meter.owner_of(subscription_id) != user_id:
            return ConsumeResult(False, 0, subscription_id, "not_found")
        result = self._precheck(user_id, now) or self.meter.try_consume(subscription_id, now)
        self._log(user_id, result)
        return result

    @staticmethod
    def _log(user_id: str, result: ConsumeResult) -> None:
        if result.allowed:
            logger.info(
                "usage_admitted",
                extra={"user_id": user_id, "subscription_id": result.subscription_id, "remaining": result.remaining},
            )
        else:
            logger.info(
                "usage_denied",
                extra={"user_id": user_id, "subscription_id": result.subscription_id, "reason": result.reason},
            )


consumption_service = ConsumptionService()
