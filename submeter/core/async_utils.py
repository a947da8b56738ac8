"""
Thread offloading for route handlers.

Service calls are synchronous: they hold a store transaction and some of
them wait on a provider API. Handlers await them through run_sync() so
the event loop keeps accepting webhooks while a worker thread waits on a
SQLite lock or an HTTP response.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional, TypeVar

from submeter.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _call_name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or getattr(func, "__name__", None) or repr(func)


async def run_sync(func: Callable[..., T], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> T:
    """Await ``func(*args, **kwargs)`` on a worker thread.

    *timeout* defaults to SUBMETER_BLOCKING_CALL_TIMEOUT_S. When it expires
    the caller gets TimeoutError. The worker is not interrupted: a
    transaction it holds still commits or rolls back by itself.
    """
    limit = settings.blocking_call_timeout_s if timeout is None else timeout
    started = time.perf_counter()
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=limit)
    except asyncio.TimeoutError:
        name = _call_name(func)
        logger.warning("blocking_call_timeout", extra={"call": name, "timeout_s": limit})
        raise TimeoutError(f"{name} did not finish within {limit}s") from None
    finally:
        logger.debug(
            "blocking_call_finished",
            extra={"call": _call_name(func), "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
