"""
Provider webhook endpoints.

POST /api/webhooks/{provider} takes the raw body (signatures are computed
over the exact bytes), headers and query string. Duplicates, unhandled
types and unresolved events are all acknowledged with 200 so the
provider stops retrying; authentication and parse failures raise
SubmeterError and are rendered by the registry handler.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Request

from submeter.config import PROVIDERS
from submeter.core.async_utils import run_sync
from submeter.core.errors import SubmeterError
from submeter.services.notification_service import notification_service
from submeter.services.webhook_service import webhook_service

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/{provider}", summary="Provider webhook", description="Receive a billing event from a payment provider.")
async def receive_webhook(provider: str, request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    outcome = await run_sync(
        webhook_service.process,
        provider,
        body,
        dict(request.headers),
        dict(request.query_params),
    )
    if outcome.notifications:
        background_tasks.add_task(notification_service.send_all, outcome.notifications)
    return outcome.to_dict()


@router.get("/{provider}", summary="Webhook probe", description="Liveness probe for provider dashboards.")
async def probe_webhook(provider: str):
    if provider not in PROVIDERS:
        raise SubmeterError("SMT-EVT-002", detail=f"unknown provider {provider!r}")
    return {"status": "ok", "provider": provider}
