"""Webhook processor — applies gateway events, payments exactly once.

Gateways deliver webhooks at least once and may redeliver. Each event is
keyed by "{type}:{object_id}" and its receipt is written in the same unit of
work as the event's effect. Payment events are checked against that
receipt, so a redelivery is acknowledged as a duplicate without repeating
the effect. Subscription events carry the full subscription state and are
applied on every delivery; a later update for the same subscription
(renewal, plan change, PAST_DUE recovery) overwrites the earlier one.

Handled types:
    payment.succeeded      settle the commission named in payload["commission_id"]
    payment.failed         notify the contractor named in the payload
    subscription.created   upsert the subscription and weekly credit limit
    subscription.updated   same as created
    subscription.deleted   cancel the subscription, weekly limit → 0
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from jobledger.compensation.commission import CommissionSettlement
from jobledger.errors import AlreadySettledError, ValidationError
from jobledger.models.ledger import (
    ContractorAccount,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from jobledger.models.notification import NotificationKind, WebhookReceipt
from jobledger.notifications.outbox import NotificationOutbox
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork

logger = structlog.get_logger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"

# Effects that must happen at most once per gateway object.
_ONCE_ONLY = frozenset({PAYMENT_SUCCEEDED, PAYMENT_FAILED})


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    object_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def receipt_id(self) -> str:
        return f"{self.type}:{self.object_id}"


class WebhookProcessor:
    """Usage:
        processor = WebhookProcessor(store, commissions, outbox)
        processor.handle(WebhookEvent("payment.succeeded", "pi_1",
                                      {"commission_id": "com_abc"}))
        # -> "processed"; a second delivery -> "duplicate"
    """

    def __init__(
        self,
        store: Store,
        commissions: CommissionSettlement,
        outbox: NotificationOutbox,
    ) -> None:
        self._store = store
        self._commissions = commissions
        self._outbox = outbox
        self._handlers: dict[str, Callable[[UnitOfWork, WebhookEvent, datetime], str]] = {
            PAYMENT_SUCCEEDED: self._payment_succeeded,
            PAYMENT_FAILED: self._payment_failed,
            SUBSCRIPTION_CREATED: self._subscription_upsert,
            SUBSCRIPTION_UPDATED: self._subscription_upsert,
            SUBSCRIPTION_DELETED: self._subscription_deleted,
        }

    def handle(self, event: WebhookEvent, now: Optional[datetime] = None) -> str:
        """Apply an event. Returns "processed", "duplicate" or "ignored"."""
        if not event.object_id:
            raise ValidationError("Webhook event has no object id")
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Webhook ignored", webhook_type=event.type, object_id=event.object_id)
            return "ignored"
        if now is None:
            now = datetime.now(timezone.utc)

        try:
            with self._store.transaction() as uow:
                receipt = uow.get("webhook_receipts", event.receipt_id, for_update=True)
                if receipt is not None and event.type in _ONCE_ONLY:
                    return "duplicate"
                outcome = handler(uow, event, now)
                uow.put("webhook_receipts", WebhookReceipt(
                    receipt_id=event.receipt_id,
                    event_type=event.type,
                    object_id=event.object_id,
                    received_at=now,
                    outcome=outcome,
                ))
                uow.record_event(
                    EventKind.WEBHOOK_PROCESSED,
                    "gateway",
                    {"receipt_id": event.receipt_id, "outcome": outcome},
                    now=now,
                )
        except AlreadySettledError as e:
            logger.info("Webhook for settled commission", receipt_id=event.receipt_id, error=str(e))
            return "duplicate"
        logger.info("Webhook processed", receipt_id=event.receipt_id, outcome=outcome)
        return outcome

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _payment_succeeded(self, uow: UnitOfWork, event: WebhookEvent, now: datetime) -> str:
        commission_id = event.payload.get("commission_id")
        if not commission_id:
            return "ignored"
        self._commissions.settle(uow, commission_id, event.object_id, now)
        return "processed"

    def _payment_failed(self, uow: UnitOfWork, event: WebhookEvent, now: datetime) -> str:
        contractor_id = event.payload.get("contractor_id")
        if not contractor_id:
            return "ignored"
        self._outbox.notify(
            uow,
            contractor_id,
            NotificationKind.PAYMENT_FAILED,
            "Payment failed",
            event.payload.get("message", "Your payment could not be processed."),
            commission_id=event.payload.get("commission_id"),
            now=now,
        )
        return "processed"

    def _subscription_upsert(self, uow: UnitOfWork, event: WebhookEvent, now: datetime) -> str:
        payload = event.payload
        contractor_id = payload.get("contractor_id")
        if not contractor_id:
            raise ValidationError("Subscription webhook needs contractor_id")
        try:
            plan = SubscriptionPlan(payload.get("plan", SubscriptionPlan.MONTHLY.value))
            status = SubscriptionStatus(payload.get("status", SubscriptionStatus.ACTIVE.value))
            limit = int(payload.get("weekly_credit_limit", 0))
        except ValueError as e:
            raise ValidationError(f"Malformed subscription webhook: {e}") from e

        uow.get("subscriptions", contractor_id, for_update=True)
        subscription = Subscription(
            contractor_id=contractor_id,
            external_ref=event.object_id,
            plan=plan,
            status=status,
            weekly_credit_limit=limit,
            current_period_start=_parse_ts(payload.get("current_period_start")),
            current_period_end=_parse_ts(payload.get("current_period_end")),
        )
        uow.put("subscriptions", subscription)
        account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
        account.weekly_credit_limit = limit if status == SubscriptionStatus.ACTIVE else 0
        uow.put("accounts", account)
        uow.record_event(
            EventKind.SUBSCRIPTION_UPDATED,
            "gateway",
            {"contractor_id": contractor_id, "status": status.value, "weekly_credit_limit": limit},
            now=now,
        )
        return "processed"

    def _subscription_deleted(self, uow: UnitOfWork, event: WebhookEvent, now: datetime) -> str:
        contractor_id = event.payload.get("contractor_id")
        if not contractor_id:
            raise ValidationError("Subscription webhook needs contractor_id")
        subscription = uow.get("subscriptions", contractor_id, for_update=True)
        if subscription is not None:
            subscription.status = SubscriptionStatus.CANCELLED
            uow.put("subscriptions", subscription)
        account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
        account.weekly_credit_limit = 0
        uow.put("accounts", account)
        uow.record_event(
            EventKind.SUBSCRIPTION_UPDATED,
            "gateway",
            {"contractor_id": contractor_id, "status": SubscriptionStatus.CANCELLED.value},
            now=now,
        )
        return "processed"


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Bad timestamp in webhook: {value!r}") from e
