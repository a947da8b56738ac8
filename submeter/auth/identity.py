"""
Caller identity
===============

Authentication happens upstream; the gateway forwards the authenticated
user id in ``X-User-Id``. Operator endpoints require
``X-Internal-API-Key`` matching SUBMETER_INTERNAL_API_KEY.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header

from submeter.config import settings
from submeter.core.errors import SubmeterError

logger = logging.getLogger(__name__)


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the user the request acts for."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise SubmeterError("SMT-API-002", detail="X-User-Id header missing")
    return user_id


async def require_internal_key(x_internal_api_key: Optional[str] = Header(None)) -> str:
    """FastAPI dependency guarding operator endpoints. Returns the operator label."""
    expected = settings.internal_api_key
    if not expected:
        logger.warning("Operator endpoint called but SUBMETER_INTERNAL_API_KEY is not set")
        raise SubmeterError("SMT-API-001", detail="internal API key not configured")
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, expected):
        raise SubmeterError("SMT-API-001", detail="invalid internal API key")
    return "operator"
