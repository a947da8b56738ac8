"""
Request context middleware.

Sets the logging context vars for the duration of one request:

- request_id      X-Request-ID or a fresh uuid4 hex
- correlation_id  X-Correlation-ID, else the provider's delivery id
                  (``webhook-id`` on Standard Webhooks senders), else
                  the request id
- user_id         X-User-Id forwarded by the gateway

Both ids are echoed on the response. Health probes are logged at DEBUG
so uptime checks do not drown the access log.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from submeter.core.structured_logging import correlation_id_var, request_id_var, user_id_var

logger = logging.getLogger(__name__)

_QUIET_PATHS = ("/api/health",)


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request/correlation/user ids into contextvars for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        headers = request.headers
        req_id = headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = headers.get("x-correlation-id") or headers.get("webhook-id") or req_id

        tokens = [
            (request_id_var, request_id_var.set(req_id)),
            (correlation_id_var, correlation_id_var.set(corr_id)),
            (user_id_var, user_id_var.set(headers.get("x-user-id") or None)),
        ]
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            level = logging.DEBUG if request.url.path in _QUIET_PATHS else logging.INFO
            logger.log(
                level,
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": _route_template(request),
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
