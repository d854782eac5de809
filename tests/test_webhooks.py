"""Tests for the webhook processor — proves payment events take effect once
and every subscription update is applied."""

from datetime import datetime, timedelta, timezone

import pytest

from jobledger.errors import ValidationError
from jobledger.models.commission import CommissionStatus
from jobledger.models.ledger import SubscriptionStatus
from jobledger.payments.webhooks import WebhookEvent


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _paid(commission_id: str, reference: str = "pi_1") -> WebhookEvent:
    return WebhookEvent("payment.succeeded", reference, {"commission_id": commission_id})


class TestPaymentSucceeded:
    def test_settles_commission_once(self, service, market) -> None:
        payment = service.commissions.for_job(market.completed_job().job_id)

        assert service.webhooks.handle(_paid(payment.commission_id), now=_now()) == "processed"
        assert service.webhooks.handle(_paid(payment.commission_id), now=_now()) == "duplicate"

        settled = service.commissions.get(payment.commission_id)
        assert settled.status == CommissionStatus.PAID
        assert settled.external_payment_ref == "pi_1"
        assert len(service.store.find("webhook_receipts")) == 1

    def test_second_payment_for_settled_commission(self, service, market) -> None:
        payment = service.commissions.for_job(market.completed_job().job_id)
        service.webhooks.handle(_paid(payment.commission_id, "pi_1"))
        assert service.webhooks.handle(_paid(payment.commission_id, "pi_2")) == "duplicate"
        assert service.commissions.get(payment.commission_id).external_payment_ref == "pi_1"

    def test_without_commission_id_is_ignored(self, service) -> None:
        event = WebhookEvent("payment.succeeded", "pi_9", {})
        assert service.webhooks.handle(event) == "ignored"


class TestOtherEvents:
    def test_unknown_type_ignored(self, service) -> None:
        assert service.webhooks.handle(WebhookEvent("charge.refunded", "ch_1")) == "ignored"
        assert service.store.find("webhook_receipts") == []

    def test_missing_object_id(self, service) -> None:
        with pytest.raises(ValidationError):
            service.webhooks.handle(WebhookEvent("payment.succeeded", ""))

    def test_payment_failed_notifies_contractor(self, service, market, sink) -> None:
        market.contractor("contractor_1")
        event = WebhookEvent("payment.failed", "pi_3", {"contractor_id": "contractor_1"})
        assert service.webhooks.handle(event, now=_now()) == "processed"
        service.outbox.flush()
        assert "Payment failed" in sink.titles_for("contractor_1")


class TestSubscriptions:
    def test_create_then_delete(self, service, market) -> None:
        market.contractor("contractor_1")
        created = WebhookEvent(
            "subscription.created",
            "sub_1",
            {"contractor_id": "contractor_1", "plan": "YEARLY", "weekly_credit_limit": 15},
        )
        assert service.webhooks.handle(created, now=_now()) == "processed"
        assert service.onboarding.get("contractor_1").weekly_credit_limit == 15
        subscription = service.store.get("subscriptions", "contractor_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.external_ref == "sub_1"

        deleted = WebhookEvent("subscription.deleted", "sub_1", {"contractor_id": "contractor_1"})
        assert service.webhooks.handle(deleted, now=_now()) == "processed"
        assert service.onboarding.get("contractor_1").weekly_credit_limit == 0
        assert service.store.get("subscriptions", "contractor_1").status == SubscriptionStatus.CANCELLED

    def test_every_update_for_a_subscription_applies(self, service, market) -> None:
        market.contractor("contractor_1")
        lapsed = WebhookEvent(
            "subscription.updated",
            "sub_1",
            {"contractor_id": "contractor_1", "status": "PAST_DUE", "weekly_credit_limit": 15},
        )
        renewed = WebhookEvent(
            "subscription.updated",
            "sub_1",
            {
                "contractor_id": "contractor_1",
                "status": "ACTIVE",
                "weekly_credit_limit": 15,
                "current_period_end": (_now() + timedelta(days=30)).isoformat(),
            },
        )

        assert service.webhooks.handle(lapsed, now=_now()) == "processed"
        assert service.webhooks.handle(renewed, now=_now()) == "processed"

        subscription = service.store.get("subscriptions", "contractor_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == _now() + timedelta(days=30)
        assert service.onboarding.get("contractor_1").weekly_credit_limit == 15

    def test_renewal_keeps_weekly_allocations_running(self, service, market) -> None:
        market.contractor("contractor_1")
        for days in (7, 37):
            service.webhooks.handle(WebhookEvent(
                "subscription.updated",
                "sub_1",
                {
                    "contractor_id": "contractor_1",
                    "weekly_credit_limit": 10,
                    "current_period_end": (_now() + timedelta(days=days)).isoformat(),
                },
            ), now=_now())
        report = service.scheduler.run_weekly_allocations(_now() + timedelta(days=14))
        assert report.applied == 1
        assert service.ledger.balance("contractor_1") == 10

    def test_past_due_subscription_gets_no_limit(self, service, market) -> None:
        market.contractor("contractor_1")
        event = WebhookEvent(
            "subscription.updated",
            "sub_1",
            {"contractor_id": "contractor_1", "status": "PAST_DUE", "weekly_credit_limit": 15},
        )
        service.webhooks.handle(event)
        assert service.onboarding.get("contractor_1").weekly_credit_limit == 0

    def test_malformed_plan_rejected(self, service, market) -> None:
        market.contractor("contractor_1")
        event = WebhookEvent(
            "subscription.created",
            "sub_1",
            {"contractor_id": "contractor_1", "plan": "FORTNIGHTLY"},
        )
        with pytest.raises(ValidationError):
            service.webhooks.handle(event)
        assert service.store.find("webhook_receipts") == []
