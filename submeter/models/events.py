"""
Canonical billing event
=======================

Every provider webhook is normalized into a BillingEvent before it
reaches the idempotency ledger and the state machine. Nothing
downstream of the normalizers looks at provider-specific payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    UNHANDLED = "unhandled"


@dataclass
class BillingEvent:
    """Provider-independent billing event."""

    provider: str
    event_id: str
    event_type: EventType
    provider_event_type: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    plan: Optional[str] = None
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_immediately: bool = True
    # Only set by update events that carry the flag explicitly
    cancel_at_period_end: Optional[bool] = None
    occurred_at: Optional[datetime] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_handled(self) -> bool:
        return self.event_type is not EventType.UNHANDLED

    @property
    def is_resolvable(self) -> bool:
        """An event can only be applied when it names the user it belongs to."""
        return bool(self.user_id)
