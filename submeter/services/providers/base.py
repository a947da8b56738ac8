"""
Shared pieces of the provider event normalizers.

Each provider module turns a raw webhook (body bytes + headers + query)
into a canonical BillingEvent. Authentication failures raise
SignatureError (401), unparseable bodies raise PayloadError (400).
Unknown event types and events without a user never raise: they come
back as EventType.UNHANDLED or with is_resolvable == False.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from submeter.config import Settings, settings
from submeter.core.errors import SubmeterError
from submeter.models.billing import as_naive_utc
from submeter.models.events import BillingEvent
from submeter.services.plan_catalog import plan_catalog

logger = logging.getLogger(__name__)


class SignatureError(SubmeterError):
    """Webhook authentication failed."""

    def __init__(self, detail: str, code: str = "SMT-AUTH-001", context: dict | None = None) -> None:
        super().__init__(code, detail=detail, context=context)


class PayloadError(SubmeterError):
    """Webhook body could not be parsed."""

    def __init__(self, detail: str, context: dict | None = None) -> None:
        super().__init__("SMT-EVT-001", detail=detail, context=context)


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def body_digest(body: bytes) -> str:
    """Stable event id for providers that do not send one."""
    return hashlib.sha256(body).hexdigest()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds or an ISO-8601 string into naive UTC.

    Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc).replace(tzinfo=None)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None


class EventNormalizer(ABC):
    """Turns one provider's webhook into a BillingEvent."""

    provider: str = ""

    def __init__(self, cfg: Settings = settings) -> None:
        self.settings = cfg

    @property
    def verification_enabled(self) -> bool:
        return self.settings.webhook_verification_enabled()

    def resolve_plan(self, product_id: Optional[str], metadata: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        """Map a provider product/price id to a plan, falling back to metadata."""
        if product_id:
            plan = self.settings.product_map(self.provider).get(str(product_id))
            if plan:
                return plan
        metadata = metadata or {}
        for key in ("plan", "plan_type"):
            candidate = metadata.get(key)
            if candidate in plan_catalog:
                return candidate
        return None

    def check_timestamp(self, ts: int, now: Optional[float] = None) -> None:
        """Reject signatures older (or newer) than the configured tolerance."""
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        if abs(now - ts) > self.settings.webhook_tolerance_s:
            raise SignatureError(
                f"timestamp {ts} outside {self.settings.webhook_tolerance_s}s tolerance",
                code="SMT-AUTH-003",
                context={"provider": self.provider},
            )

    def require_secret(self, secret: Optional[str]) -> str:
        if not secret:
            raise SignatureError(
                f"{self.provider} signing secret not configured",
                context={"provider": self.provider},
            )
        return secret

    @abstractmethod
    def normalize(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
        verify: bool = True,
    ) -> BillingEvent:
        """Verify and parse one webhook delivery.

        verify=False skips authentication; it is only used to re-parse a
        payload that was verified when it was first stored.
        """
