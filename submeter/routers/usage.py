"""
Usage Router
============

Admission and usage summary for the caller identified by X-User-Id.
Both allow and deny answer 200; the body says which.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from submeter.auth.identity import get_user_id
from submeter.core.async_utils import run_sync
from submeter.services.consumption_service import consumption_service
from submeter.services.usage_meter import ConsumeResult, usage_meter

logger = logging.getLogger(__name__)

router = APIRouter()


class ConsumeResponse(BaseModel):
    allowed: bool
    remaining: int
    subscription_id: Optional[int] = None
    reason: Optional[str] = None


class UsageResponse(BaseModel):
    user_id: str
    plan: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[int] = None
    usage_count: int
    usage_limit: int
    remaining: int
    next_reset_at: Optional[str] = None
    period_end: Optional[str] = None
    cancel_at_period_end: bool
    scheduled_plan: Optional[str] = None
    pay_per_use_grants: int
    pay_per_use_remaining: int
    total_remaining: int


def _consume_response(result: ConsumeResult) -> ConsumeResponse:
    return ConsumeResponse(
        allowed=result.allowed,
        remaining=result.remaining,
        subscription_id=result.subscription_id,
        reason=result.reason,
    )


@router.post("/consume", response_model=ConsumeResponse, summary="Consume one unit")
async def consume(user_id: str = Depends(get_user_id)):
    """Admit one unit of usage, drawing pay-per-use credits first."""
    result = await run_sync(consumption_service.consume, user_id)
    return _consume_response(result)


@router.post("/subscriptions/{subscription_id}/consume", response_model=ConsumeResponse, summary="Consume from one subscription")
async def consume_subscription(subscription_id: int, user_id: str = Depends(get_user_id)):
    result = await run_sync(consumption_service.consume_subscription, user_id, subscription_id)
    return _consume_response(result)


@router.get("", response_model=UsageResponse, summary="Usage summary")
async def get_usage(user_id: str = Depends(get_user_id)):
    summary = await run_sync(usage_meter.get_usage, user_id)
    return UsageResponse(
        user_id=summary.user_id,
        plan=summary.plan,
        status=summary.status,
        subscription_id=summary.subscription_id,
        usage_count=summary.usage_count,
        usage_limit=summary.usage_limit,
        remaining=summary.remaining,
        next_reset_at=summary.next_reset_at.isoformat() if summary.next_reset_at else None,
        period_end=summary.period_end.isoformat() if summary.period_end else None,
        cancel_at_period_end=summary.cancel_at_period_end,
        scheduled_plan=summary.scheduled_plan,
        pay_per_use_grants=summary.pay_per_use_grants,
        pay_per_use_remaining=summary.pay_per_use_remaining,
        total_remaining=summary.total_remaining,
    )
