import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import OperationalError

from submeter.config import settings
from submeter.core.database import close_db, init_db
from submeter.core.errors import SubmeterError
from submeter.core.errors.middleware import store_unavailable_handler, submeter_error_handler
from submeter.core.errors.registry import error_registry
from submeter.core.log_middleware import RequestContextMiddleware
from submeter.core.structured_logging import APP_VERSION, setup_logging
from submeter.routers import admin, billing, health, usage, webhooks
from submeter.services.reconciliation import marker_prune_loop

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_directory, log_level=logging.DEBUG if settings.debug else logging.INFO)

logger = logging.getLogger(__name__)

API_TITLE = "submeter API"

API_DESCRIPTION = """
## submeter - Subscription Lifecycle & Usage Metering

Ingests billing webhooks from Stripe, Paddle, Dodo Payments and Gumroad,
keeps one subscription state per user, and admits metered usage against
the plan quota.

### Authentication

Webhooks are authenticated by provider signature. User endpoints expect
the upstream gateway to forward `X-User-Id`. Operator endpoints require
`X-Internal-API-Key`.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness. No authentication required."},
    {"name": "webhooks", "description": "Provider billing webhooks. Authenticated by signature."},
    {"name": "usage", "description": "Usage admission and summary. **Requires X-User-Id.**"},
    {"name": "billing", "description": "Subscription state and plan changes. **Requires X-User-Id.**"},
    {"name": "admin", "description": "Operator endpoints. **Requires X-Internal-API-Key.**"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the error registry, migrate the store, run the marker prune loop."""
    logger.info("Starting submeter API v%s (environment=%s)", APP_VERSION, settings.environment)

    error_registry.load()
    init_db()

    prune_task = None
    if settings.marker_prune_interval_s > 0:
        prune_task = asyncio.create_task(marker_prune_loop())

    yield

    logger.info("Shutting down submeter API...")
    if prune_task is not None:
        prune_task.cancel()
        try:
            await prune_task
        except asyncio.CancelledError:
            logger.info("Marker prune loop cancelled")
    close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id, correlation_id and user_id in every log entry
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(SubmeterError, submeter_error_handler)
    app.add_exception_handler(OperationalError, store_unavailable_handler)

    # Anything else is a bug: log the traceback, answer SMT-SYS-001 JSON
    @app.exception_handler(Exception)
    async def _internal_error(request: Request, exc: Exception):
        logger.exception("unhandled_exception", extra={"http.method": request.method, "http.path": request.url.path})
        return await submeter_error_handler(request, SubmeterError("SMT-SYS-001", detail=repr(exc)))

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(usage.router, prefix="/api/usage", tags=["usage"])
    app.include_router(billing.router, prefix="/api/billing", tags=["billing"])
    app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

    return app


app = create_app()
