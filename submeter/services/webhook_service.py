"""
Webhook Service
===============

Entry point for provider webhooks. One delivery is handled as:

    normalize (verify signature, parse)      → SignatureError / PayloadError
    BEGIN
        claim idempotency marker              → duplicate? acknowledge, stop
        apply transition to subscriptions
        record marker outcome
    COMMIT
    return notifications for the caller to send after the commit

The claim and the transition share one transaction: a crash in between
rolls both back and the provider's redelivery starts over. A second
delivery of the same (provider, event_id) finds the marker and changes
nothing.

Events that cannot be applied yet (no user, subscription row not seen)
are acknowledged with outcome ``unresolved`` and their body is kept on
the marker so an operator can replay them (see replay()).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional

from submeter.core.database import _sqlite_retry, get_engine
from submeter.core.errors import SubmeterError
from submeter.core.structured_logging import event_id_var, provider_var
from submeter.models.billing import MarkerOutcome, utcnow
from submeter.models.events import BillingEvent
from submeter.services.idempotency_ledger import IdempotencyLedger, idempotency_ledger
from submeter.services.notification_service import Notification
from submeter.services.providers import get_normalizer
from submeter.services.state_machine import SubscriptionStateMachine, TransitionResult, state_machine

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"


@dataclass
class WebhookOutcome:
    provider: str
    event_id: str
    event_type: str
    outcome: str
    action: Optional[str] = None
    subscription_id: Optional[int] = None
    notifications: List[Notification] = field(default_factory=list)
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "received": True,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome,
            "action": self.action,
            "subscription_id": self.subscription_id,
        }


def _payload_text(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


class WebhookService:
    def __init__(
        self,
        engine_factory=get_engine,
        ledger: IdempotencyLedger = idempotency_ledger,
        machine: SubscriptionStateMachine = state_machine,
    ) -> None:
        self._engine_factory = engine_factory
        self.ledger = ledger
        self.machine = machine

    def process(
        self,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> WebhookOutcome:
        """Verify, deduplicate and apply one webhook delivery."""
        provider_token = provider_var.set(provider)
        event_token = None
        try:
            event = get_normalizer(provider).normalize(body, headers, query)
            event_token = event_id_var.set(event.event_id)
            return self.apply_event(event, body, now)
        finally:
            if event_token is not None:
                event_id_var.reset(event_token)
            provider_var.reset(provider_token)

    def apply_event(self, event: BillingEvent, body: bytes, now: Optional[datetime] = None) -> WebhookOutcome:
        now = now or utcnow()

        def _do() -> Optional[TransitionResult]:
            with self._engine_factory().begin() as conn:
                claimed = self.ledger.try_claim(
                    conn,
                    event.provider,
                    event.event_id,
                    event_type=event.provider_event_type,
                    user_id=event.user_id,
                    now=now,
                )
                if not claimed:
                    return None
                result = self.machine.apply(conn, event, now)
                self._record(conn, event, result, body)
                return result

        result = _sqlite_retry(_do)
        if result is None:
            outcome = WebhookOutcome(
                event.provider, event.event_id, event.provider_event_type, DUPLICATE
            )
        else:
            outcome = self._outcome(event, result)
        self._log(outcome, event)
        return outcome

    def replay(
        self,
        provider: str,
        event_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WebhookOutcome:
        """Re-apply an event that was acknowledged as unresolved.

        The stored body was authenticated on first delivery, so it is
        re-parsed without signature checks. *user_id* lets an operator
        attach the event to a user when the provider payload had none.
        """
        now = now or utcnow()
        marker = self.ledger.get(provider, event_id)
        if marker is None:
            raise SubmeterError("SMT-EVT-003", detail=f"no marker for {provider} event {event_id}")
        if marker["outcome"] != MarkerOutcome.UNRESOLVED.value or not marker["payload"]:
            raise SubmeterError(
                "SMT-EVT-003",
                detail=f"{provider} event {event_id} is {marker['outcome']}, not replayable",
            )

        body = marker["payload"].encode("utf-8")
        event = get_normalizer(provider).normalize(body, {}, None, verify=False)
        event.event_id = event_id
        if user_id:
            event.user_id = user_id

        def _do() -> Optional[TransitionResult]:
            with self._engine_factory().begin() as conn:
                if not self.ledger.reclaim_unresolved(conn, provider, event_id, now):
                    return None
                result = self.machine.apply(conn, event, now)
                self._record(conn, event, result, body)
                return result

        result = _sqlite_retry(_do)
        if result is None:
            raise SubmeterError(
                "SMT-EVT-003",
                detail=f"{provider} event {event_id} was replayed concurrently",
            )
        outcome = self._outcome(event, result)
        logger.info(
            "webhook_replayed",
            extra={"provider": provider, "event_id": event_id, "outcome": outcome.outcome, "action": outcome.action},
        )
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, conn, event: BillingEvent, result: TransitionResult, body: bytes) -> None:
        outcome = result.outcome
        self.ledger.mark_outcome(
            conn,
            event.provider,
            event.event_id,
            outcome,
            detail=result.detail,
            payload=_payload_text(body) if outcome == MarkerOutcome.UNRESOLVED.value else None,
        )

    @staticmethod
    def _outcome(event: BillingEvent, result: TransitionResult) -> WebhookOutcome:
        return WebhookOutcome(
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.provider_event_type,
            outcome=result.outcome,
            action=result.action,
            subscription_id=result.subscription_id,
            notifications=list(result.notifications),
            detail=result.detail,
        )

    @staticmethod
    def _log(outcome: WebhookOutcome, event: BillingEvent) -> None:
        extra = {
            "provider": outcome.provider,
            "event_id": outcome.event_id,
            "event_type": outcome.event_type,
            "canonical_type": event.event_type.value,
            "action": outcome.action,
            "subscription_id": outcome.subscription_id,
            "user_id": event.user_id,
        }
        if outcome.outcome == DUPLICATE:
            logger.info("webhook_duplicate", extra=extra)
        elif outcome.outcome == MarkerOutcome.UNHANDLED.value:
            logger.info("webhook_unhandled", extra=extra)
        elif outcome.outcome == MarkerOutcome.UNRESOLVED.value:
            logger.warning("webhook_unresolved", extra={**extra, "detail": outcome.detail})
        elif outcome.outcome == MarkerOutcome.SKIPPED.value:
            logger.info("webhook_skipped", extra={**extra, "detail": outcome.detail})
        else:
            logger.info("webhook_applied", extra=extra)


webhook_service = WebhookService()
