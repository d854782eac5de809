"""Tests for contractor onboarding — registration, approval paths and KYC deadlines."""

from datetime import datetime, timedelta, timezone

import pytest

from jobledger.errors import InvalidStateError, ValidationError
from jobledger.models.ledger import AccountStatus, CreditKind, KycStatus


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class TestRegistration:
    def test_welcome_credits(self, service) -> None:
        account = service.onboarding.register_contractor("contractor_1", now=_now())
        assert account.status == AccountStatus.PENDING_APPROVAL
        assert account.credits_balance == 3
        entries = service.ledger.transactions("contractor_1")
        assert [(e.amount, e.kind) for e in entries] == [(3, CreditKind.ADDITION)]

    def test_duplicate_registration(self, service) -> None:
        service.onboarding.register_contractor("contractor_1")
        with pytest.raises(ValidationError, match="already registered"):
            service.onboarding.register_contractor("contractor_1")


class TestApproval:
    def test_with_kyc_deadline(self, service) -> None:
        service.onboarding.register_contractor("contractor_1", now=_now())
        account = service.onboarding.approve_with_kyc_deadline("contractor_1", "admin_1", now=_now())
        assert account.status == AccountStatus.ACTIVE
        assert account.kyc_status == KycStatus.PENDING
        assert account.kyc_due_by == _now() + timedelta(days=14)
        assert account.approved_by == "admin_1"

    def test_bypassing_kyc(self, service) -> None:
        service.onboarding.register_contractor("contractor_1", now=_now())
        account = service.onboarding.approve_bypassing_kyc("contractor_1", "admin_1", now=_now())
        assert account.status == AccountStatus.ACTIVE
        assert account.kyc_status == KycStatus.BYPASSED
        assert account.kyc_due_by is None

    def test_cannot_approve_twice(self, service, market) -> None:
        market.contractor("contractor_1")
        with pytest.raises(InvalidStateError):
            service.onboarding.approve_with_kyc_deadline("contractor_1", "admin_1")


class TestKycDeadline:
    def _approved(self, service) -> None:
        service.onboarding.register_contractor("contractor_1", now=_now())
        service.onboarding.approve_with_kyc_deadline("contractor_1", "admin_1", now=_now())

    def test_missed_deadline_pauses(self, service, sink) -> None:
        self._approved(service)
        assert service.onboarding.process_kyc_deadlines(_now() + timedelta(days=13)) == []

        paused = service.onboarding.process_kyc_deadlines(_now() + timedelta(days=15))

        assert paused == ["contractor_1"]
        account = service.onboarding.get("contractor_1")
        assert account.status == AccountStatus.PAUSED
        assert account.kyc_status == KycStatus.OVERDUE
        service.outbox.flush()
        assert "Account paused" in sink.titles_for("contractor_1")
        assert service.onboarding.process_kyc_deadlines(_now() + timedelta(days=16)) == []

    def test_submitted_kyc_is_not_paused(self, service) -> None:
        self._approved(service)
        service.onboarding.submit_kyc("contractor_1")
        assert service.onboarding.process_kyc_deadlines(_now() + timedelta(days=15)) == []
        account = service.onboarding.get("contractor_1")
        assert account.status == AccountStatus.ACTIVE
        assert account.kyc_status == KycStatus.SUBMITTED

    def test_rejected_kyc_past_deadline_pauses(self, service) -> None:
        self._approved(service)
        service.onboarding.submit_kyc("contractor_1")
        service.onboarding.decide_kyc("contractor_1", "admin_1", approved=False)
        assert service.onboarding.process_kyc_deadlines(_now() + timedelta(days=15)) == [
            "contractor_1"
        ]

    def test_approval_reactivates_paused_account(self, service) -> None:
        self._approved(service)
        service.onboarding.process_kyc_deadlines(_now() + timedelta(days=15))
        service.onboarding.submit_kyc("contractor_1")
        account = service.onboarding.decide_kyc("contractor_1", "admin_1", approved=True)
        assert account.status == AccountStatus.ACTIVE
        assert account.kyc_status == KycStatus.APPROVED
        assert account.kyc_due_by is None

    def test_rejection_allows_resubmission(self, service) -> None:
        self._approved(service)
        service.onboarding.submit_kyc("contractor_1")
        account = service.onboarding.decide_kyc("contractor_1", "admin_1", approved=False)
        assert account.kyc_status == KycStatus.REJECTED
        assert service.onboarding.submit_kyc("contractor_1").kyc_status == KycStatus.SUBMITTED

    def test_decide_requires_submission(self, service) -> None:
        self._approved(service)
        with pytest.raises(InvalidStateError):
            service.onboarding.decide_kyc("contractor_1", "admin_1", approved=True)
