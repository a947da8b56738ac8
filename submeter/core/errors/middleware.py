"""
FastAPI exception handlers.

SubmeterError → registry lookup → ``{"error": {...}}`` with the entry's
HTTP status, logged at the entry's severity. Retryable errors carry
``Retry-After``. A transient SQLAlchemy OperationalError is reported as
SMT-DB-001 (503): its transaction has already rolled back, so a provider
redelivering the webhook starts from a clean slate.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from submeter.core.errors import SubmeterError
from submeter.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

RETRY_AFTER_S = 5

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _error_body(code: str, entry: Optional[ErrorEntry]) -> Dict[str, Any]:
    if entry is None:
        return {
            "code": code,
            "title": "Internal error",
            "message": "An unexpected error occurred.",
            "retryable": False,
            "user_action_required": False,
            "remediation": [],
        }
    return {
        "code": entry.code,
        "title": entry.title,
        "message": entry.safe_message,
        "retryable": entry.retryable,
        "user_action_required": entry.user_action_required,
        "remediation": entry.remediation,
    }


async def submeter_error_handler(request: Request, exc: SubmeterError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message": exc.detail,
        "http.path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }

    if entry is None:
        logger.error("unregistered_error_code", extra=extra)
        return JSONResponse(status_code=500, content={"error": _error_body(exc.code, None)})

    extra["error.retryable"] = entry.retryable
    logger.log(_LOG_LEVELS.get(entry.severity, logging.ERROR), entry.title, extra=extra)
    return JSONResponse(
        status_code=entry.http_status,
        headers={"Retry-After": str(RETRY_AFTER_S)} if entry.retryable else None,
        content={"error": _error_body(exc.code, entry)},
    )


async def store_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    detail = str(exc.orig) if exc.orig is not None else str(exc)
    return await submeter_error_handler(request, SubmeterError("SMT-DB-001", detail=detail))
