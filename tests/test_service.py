"""Tests for PlatformService — proves the facade maps every outcome onto a
ServiceResult and drives the full job flow."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from jobledger.errors import ConfigurationError
from jobledger.models.dispute import DisputeType, PartyRole
from jobledger.payments.webhooks import WebhookEvent
from jobledger.service import PlatformService


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class TestConstruction:
    def test_store_without_transactions_is_fatal(self, resolver) -> None:
        with pytest.raises(ConfigurationError):
            PlatformService(resolver, store=object())


class TestResults:
    def test_success_carries_primitive_data(self, service) -> None:
        result = service.register_contractor("contractor_1", now=_now())
        assert result.success
        assert result.errors == []
        assert result.data["contractor_id"] == "contractor_1"
        assert result.data["status"] == "PENDING_APPROVAL"
        assert result.data["created_at"] == _now().isoformat()

    def test_expected_failure_has_code(self, service) -> None:
        service.register_contractor("contractor_1")
        result = service.register_contractor("contractor_1")
        assert not result.success
        assert result.error_code == "validation_error"
        assert "already registered" in result.errors[0]
        assert not result.retryable

    def test_not_found(self, service) -> None:
        result = service.get_job("job_missing")
        assert result.error_code == "not_found"

    def test_gateway_outage_is_retryable(self, service, market, gateway) -> None:
        market.contractor("contractor_1")
        job = market.posted_job()
        gateway.available = False
        result = service.purchase_access_with_payment(job.job_id, "contractor_1", "pi_1")
        assert result.error_code == "external_dependency"
        assert result.retryable

    def test_unexpected_failure_gets_correlation_id(self, service, monkeypatch) -> None:
        def broken(job_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(service.jobs, "get", broken)
        result = service.get_job("job_1")

        assert not result.success
        assert result.error_code == "internal_error"
        assert result.correlation_id
        assert result.correlation_id in result.errors[0]
        assert "disk on fire" not in result.errors[0]

    def test_sink_failure_does_not_fail_operation(self, service, market, sink) -> None:
        job = market.awaiting_job()
        sink.fail = True
        result = service.confirm_final_price(job.job_id, "customer_1", now=_now())
        assert result.success
        assert result.data["status"] == "COMPLETED"


class TestFullFlow:
    def test_post_to_commission_paid(self, service) -> None:
        service.register_contractor("contractor_1", now=_now())
        service.approve_contractor("contractor_1", "admin_1", bypass_kyc=True, now=_now())

        posted = service.post_job(
            "customer_1", "Fit kitchen", lead_price=Decimal("12.00"), now=_now()
        )
        job_id = posted.data["job_id"]
        assert posted.data["status"] == "POSTED"

        assert service.purchase_access_with_credits(job_id, "contractor_1", now=_now()).success
        assert service.get_balance("contractor_1").data["balance"] == 2
        assert service.assign_contractor(job_id, "customer_1", "contractor_1", now=_now()).success
        assert service.propose_final_price(
            job_id, "contractor_1", Decimal("500.00"), now=_now()
        ).success

        ticked = service.run_scheduler(_now() + timedelta(hours=49))
        assert ticked.success
        auto = [p for p in ticked.data["passes"] if p["name"] == "auto_confirm"][0]
        assert auto["applied"] == 1

        commission = service.commissions.for_job(job_id)
        assert commission.commission_amount == Decimal("25.00")
        outcome = service.handle_webhook(
            WebhookEvent("payment.succeeded", "pi_1", {"commission_id": commission.commission_id})
        )
        assert outcome.data == {
            "receipt_id": "payment.succeeded:pi_1",
            "outcome": "processed",
        }
        assert service.status()["outstanding_commissions"] == 0

    def test_dispute_through_facade(self, service, market) -> None:
        job = market.in_progress_job()
        result = service.open_dispute(
            job.job_id,
            "customer_1",
            PartyRole.CUSTOMER,
            DisputeType.PROJECT_DELAY,
            "No show",
            "Contractor never arrived",
            now=_now(),
        )
        assert result.success
        assert result.data["status"] == "OPEN"
        assert service.dispute_stats().data["total"] == 1


class TestStatus:
    def test_counts(self, service, market) -> None:
        market.completed_job()
        market.posted_job()
        status = service.status()
        assert status["jobs"]["COMPLETED"] == 1
        assert status["jobs"]["POSTED"] == 1
        assert status["contractors"] == 1
        assert status["outstanding_commissions"] == 1
        assert status["dead_letters"] == 0
