"""
Health check endpoint.

- GET /api/health  cheap: process alive, version, uptime, store reachable
"""

import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError

from submeter.core.async_utils import run_sync
from submeter.core.database import get_engine
from submeter.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()

_PROBE_TIMEOUT_S = 2


def _check_database() -> str:
    try:
        with get_engine().connect() as conn:
            conn.execute(sa.text("SELECT 1"))
        return "ok"
    except SQLAlchemyError as exc:
        logger.warning("health_database_down", extra={"error": str(exc)})
        return "down"


@router.get("/health")
async def health_check():
    try:
        database = await run_sync(_check_database, timeout=_PROBE_TIMEOUT_S)
    except TimeoutError:
        database = "timeout"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "database": database,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
