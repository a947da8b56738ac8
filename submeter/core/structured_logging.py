"""
Structured logging for submeter.

structlog renders every record, including plain ``logging.getLogger()``
calls from the services, as one JSON object per line on stderr and in a
size-rotated file. Records carry the request context (request id,
correlation id, caller user id) and, while a webhook is being handled,
the provider and event id.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from contextvars import ContextVar
from typing import List, Optional, Tuple

import structlog

# ── Context vars ──────────────────────────────────────────────────────
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
provider_var: ContextVar[str | None] = ContextVar("provider", default=None)
event_id_var: ContextVar[str | None] = ContextVar("event_id", default=None)

_CONTEXT_FIELDS: Tuple[Tuple[str, ContextVar], ...] = (
    ("request_id", request_id_var),
    ("correlation_id", correlation_id_var),
    ("user_id", user_id_var),
    ("provider", provider_var),
    ("event_id", event_id_var),
)

APP_VERSION = "0.4.0"
SERVICE_NAME = "submeter"

# Chatty at INFO; their failures still surface through our own logs
_QUIET_LOGGERS = ("httpcore", "httpx", "stripe", "asyncio", "watchfiles", "alembic.runtime.migration")

_startup_time: float = time.time()


def get_uptime_s() -> float:
    return time.time() - _startup_time


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: service identity plus whatever context is set.

    Explicit ``extra={...}`` values win over the context vars.
    """
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION
    for key, var in _CONTEXT_FIELDS:
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def _shared_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _file_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> Optional[logging.Handler]:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        # Read-only container filesystem: keep stderr only
        sys.stderr.write(f"submeter: file logging disabled ({exc})\n")
        return None


def setup_logging(
    log_dir: str = "logs",
    log_level: int = logging.INFO,
    log_file: str = "submeter.jsonl",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Route structlog and stdlib logging through one JSON formatter.

    Call once at process start; calling again replaces the root handlers.
    """
    processors = _shared_processors()

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    file_handler = _file_handler(log_dir, log_file, max_bytes, backup_count)
    if file_handler is not None:
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
