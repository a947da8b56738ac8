"""
Billing Router
==============

Subscription state and user-initiated plan changes:

- GET    /api/billing/subscription          current recurring subscription
- POST   /api/billing/plan-change/preview   proration quote (read-only)
- POST   /api/billing/plan-change           commit an upgrade / schedule a downgrade
- DELETE /api/billing/plan-change           withdraw a scheduled downgrade
- POST   /api/billing/renewal               cancel or resume renewal at period end
"""

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from submeter.auth.identity import get_user_id
from submeter.core.async_utils import run_sync
from submeter.services.plan_change_service import plan_change_service, serialize_subscription

logger = logging.getLogger(__name__)

router = APIRouter()


class PlanChangeRequest(BaseModel):
    new_plan: str = Field(..., min_length=1, description="Target plan: monthly or yearly")


class RenewalRequest(BaseModel):
    action: Literal["cancel", "resume"]


class SubscriptionResponse(BaseModel):
    subscription: Optional[Dict[str, Any]] = None


class PlanChangeResponse(BaseModel):
    subscription: Dict[str, Any]
    quote: Dict[str, Any]
    summary: str
    effective_at: str


@router.get("/subscription", response_model=SubscriptionResponse, summary="Current subscription")
async def get_subscription(user_id: str = Depends(get_user_id)):
    row = await run_sync(plan_change_service.current_subscription, user_id)
    return SubscriptionResponse(subscription=serialize_subscription(row) if row else None)


@router.post("/plan-change/preview", summary="Preview a plan change")
async def preview_plan_change(body: PlanChangeRequest, user_id: str = Depends(get_user_id)):
    """Proration quote for switching to *new_plan* now. Nothing is written."""
    quote = await run_sync(plan_change_service.preview, user_id, body.new_plan)
    return quote.to_dict()


@router.post("/plan-change", response_model=PlanChangeResponse, summary="Change plan")
async def commit_plan_change(body: PlanChangeRequest, user_id: str = Depends(get_user_id)):
    outcome = await run_sync(plan_change_service.commit, user_id, body.new_plan)
    return PlanChangeResponse(
        subscription=serialize_subscription(outcome.subscription),
        quote=outcome.quote.to_dict(),
        summary=outcome.summary,
        effective_at=outcome.effective_at.isoformat(),
    )


@router.delete("/plan-change", response_model=SubscriptionResponse, summary="Cancel scheduled plan change")
async def cancel_plan_change(user_id: str = Depends(get_user_id)):
    row = await run_sync(plan_change_service.cancel_scheduled_change, user_id)
    return SubscriptionResponse(subscription=serialize_subscription(row))


@router.post("/renewal", response_model=SubscriptionResponse, summary="Cancel or resume renewal")
async def set_renewal(body: RenewalRequest, user_id: str = Depends(get_user_id)):
    row = await run_sync(plan_change_service.set_cancel_at_period_end, user_id, body.action == "cancel")
    return SubscriptionResponse(subscription=serialize_subscription(row))
