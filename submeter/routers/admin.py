"""
Operator endpoints, guarded by X-Internal-API-Key.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel

from submeter.auth.identity import require_internal_key
from submeter.core.async_utils import run_sync
from submeter.services.abuse_guard import abuse_guard
from submeter.services.notification_service import notification_service
from submeter.services.reconciliation import reconciliation

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_internal_key)])


class ClearSuspensionRequest(BaseModel):
    operator: str = "operator"


class ReplayRequest(BaseModel):
    user_id: Optional[str] = None


@router.post("/users/{user_id}/clear-suspension", summary="Clear an abuse suspension")
async def clear_suspension(user_id: str, body: Optional[ClearSuspensionRequest] = None):
    operator = body.operator if body else "operator"
    restored = await run_sync(abuse_guard.clear_suspension, user_id, operator)
    return {"user_id": user_id, "restored": restored}


@router.get("/events/unresolved", summary="List unresolved events")
async def list_unresolved(limit: int = Query(100, ge=1, le=1000)):
    rows = await run_sync(reconciliation.unresolved, limit)
    return {
        "events": [
            {**row, "applied_at": row["applied_at"].isoformat() if row["applied_at"] else None}
            for row in rows
        ]
    }


@router.post("/events/{provider}/{event_id}/replay", summary="Replay an unresolved event")
async def replay_event(
    provider: str,
    event_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[ReplayRequest] = None,
):
    outcome = await run_sync(reconciliation.replay, provider, event_id, body.user_id if body else None)
    if outcome.notifications:
        background_tasks.add_task(notification_service.send_all, outcome.notifications)
    return outcome.to_dict()


@router.post("/markers/prune", summary="Prune expired idempotency markers")
async def prune_markers():
    deleted = await run_sync(reconciliation.prune_markers)
    return {"deleted": deleted}
