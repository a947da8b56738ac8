"""
Notification Sender
===================

Best-effort transactional email through the Resend HTTP API. Sending
happens after the state transition has committed (FastAPI background
task); a failed or unconfigured send is logged and never propagates.

CONFIGURATION (env vars with SUBMETER_ prefix):
    SUBMETER_NOTIFICATIONS_ENABLED   default true
    SUBMETER_RESEND_API_KEY          unset = log and skip
    SUBMETER_RESEND_API_URL          default https://api.resend.com/emails
    SUBMETER_EMAIL_FROM
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from html import escape
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx

from submeter.config import settings

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    PURCHASE_CONFIRMED = "purchase_confirmed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    email: str
    user_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


def render(notification: Notification) -> Tuple[str, str]:
    """Return (subject, html) for a notification."""
    ctx = notification.context
    plan = escape(str(ctx.get("plan", "")))
    if notification.kind is NotificationKind.SUBSCRIPTION_CONFIRMED:
        return (
            "Your subscription is active",
            f"<p>Thanks for subscribing to the <b>{plan}</b> plan. "
            f"You can use up to {ctx.get('usage_limit')} generations per period.</p>",
        )
    if notification.kind is NotificationKind.PURCHASE_CONFIRMED:
        return (
            "Your purchase is confirmed",
            f"<p>{ctx.get('usage_limit')} credits were added to your account. "
            f"They expire on {escape(str(ctx.get('expires_at') or 'never'))}.</p>",
        )
    if notification.kind is NotificationKind.SUBSCRIPTION_CANCELLED:
        ends = ctx.get("access_until")
        tail = f" You keep access until {escape(str(ends))}." if ends else ""
        return (
            "Your subscription was cancelled",
            f"<p>Your <b>{plan}</b> subscription has been cancelled.{tail}</p>",
        )
    return (
        "Payment failed",
        f"<p>We could not process the payment for your <b>{plan}</b> subscription. "
        "Please update your payment method.</p>",
    )


class NotificationService:
    """Sends transactional email via Resend."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    @property
    def configured(self) -> bool:
        return settings.notifications_enabled and bool(settings.resend_api_key)

    async def send(self, notification: Notification) -> bool:
        """Send one email. Returns True when Resend accepted it."""
        if not self.configured:
            logger.info(
                "notification_skipped",
                extra={"kind": notification.kind.value, "user_id": notification.user_id, "reason": "not_configured"},
            )
            return False

        subject, html = render(notification)
        try:
            async with httpx.AsyncClient(
                timeout=settings.notification_timeout_s, transport=self._transport
            ) as client:
                response = await client.post(
                    settings.resend_api_url,
                    headers={"Authorization": f"Bearer {settings.resend_api_key}"},
                    json={
                        "from": settings.email_from,
                        "to": [notification.email],
                        "subject": subject,
                        "html": html,
                    },
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "notification_failed",
                extra={"kind": notification.kind.value, "user_id": notification.user_id, "error": str(exc)},
            )
            return False

        if response.status_code >= 300:
            logger.warning(
                "notification_rejected",
                extra={
                    "kind": notification.kind.value,
                    "user_id": notification.user_id,
                    "http.status_code": response.status_code,
                },
            )
            return False

        logger.info("notification_sent", extra={"kind": notification.kind.value, "user_id": notification.user_id})
        return True

    async def send_all(self, notifications: Iterable[Notification]) -> int:
        sent = 0
        for notification in notifications:
            if await self.send(notification):
                sent += 1
        return sent


notification_service = NotificationService()
