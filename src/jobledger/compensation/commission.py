"""Commission settlement — the contractor's obligation on a completed job.

Commission is owed only when the assigned contractor reached the job
through credits; direct-payment access already paid the platform.

    commission_amount = final_amount × commission_rate   (half-up to 0.01)
    vat_amount        = 0
    total_amount      = commission_amount
    due_date          = completion + commission due period

The rate is read from the PolicyResolver at settlement time, never
hard-coded. Exactly one CommissionPayment exists per job; creation is
idempotent and the store enforces a unique index on job_id.

State machine:
    PENDING → PAID | OVERDUE | WAIVED
    OVERDUE → PAID | WAIVED
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import uuid4

import structlog

from jobledger.errors import AlreadySettledError, NotFoundError, ValidationError
from jobledger.models.commission import CommissionPayment, CommissionStatus
from jobledger.models.job import AccessMethod, Job
from jobledger.models.notification import NotificationKind
from jobledger.notifications.outbox import NotificationOutbox
from jobledger.notifications.reminders import (
    active_threshold,
    hours_remaining,
    recently_reminded,
)
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork
from jobledger.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

_CENTS = Decimal("0.01")


def compute_commission(final_amount: Decimal, rate: Decimal) -> Decimal:
    return (final_amount * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)


class CommissionSettlement:
    """Usage:
        settlement = CommissionSettlement(store, resolver, outbox)
        with store.transaction() as uow:
            payment = settlement.create_for_completed_job(uow, job)
        settlement.mark_paid(payment.commission_id, "pi_123")
    """

    def __init__(
        self,
        store: Store,
        resolver: PolicyResolver,
        outbox: NotificationOutbox,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._outbox = outbox

    # ------------------------------------------------------------------
    # Creation and amount changes (join the caller's unit of work)
    # ------------------------------------------------------------------

    def create_for_completed_job(
        self,
        uow: UnitOfWork,
        job: Job,
        now: Optional[datetime] = None,
    ) -> Optional[CommissionPayment]:
        """Create the commission for a job that just completed.

        Returns the existing payment when one is already recorded, and
        None when the job carries no commission.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        existing = self._find_for_job(uow, job.job_id)
        if existing is not None:
            return existing

        if job.contractor_id is None or job.final_amount is None:
            return None
        if job.final_amount <= Decimal("0"):
            return None
        accesses = uow.find(
            "accesses",
            lambda a: a.job_id == job.job_id and a.contractor_id == job.contractor_id,
        )
        if not accesses or accesses[0].method != AccessMethod.CREDIT:
            return None

        rate = self._resolver.commission_rate()
        amount = compute_commission(job.final_amount, rate)
        payment = CommissionPayment(
            commission_id=f"com_{uuid4().hex[:12]}",
            job_id=job.job_id,
            contractor_id=job.contractor_id,
            customer_id=job.customer_id,
            final_job_amount=job.final_amount,
            commission_rate=rate,
            commission_amount=amount,
            total_amount=amount,
            due_date=now + self._resolver.commission_due(),
            created_at=now,
        )
        uow.put("commissions", payment)
        uow.record_event(
            EventKind.COMMISSION_CREATED,
            "system",
            {
                "commission_id": payment.commission_id,
                "job_id": job.job_id,
                "contractor_id": job.contractor_id,
                "final_amount": str(job.final_amount),
                "rate": str(rate),
                "amount": str(amount),
            },
            now=now,
        )
        self._outbox.notify(
            uow,
            job.contractor_id,
            NotificationKind.COMMISSION_DUE,
            "Commission payment due",
            f"Commission of £{amount} for job {job.title!r} is due by "
            f"{payment.due_date:%Y-%m-%d}.",
            action_link=f"/dashboard/commissions/{payment.commission_id}",
            job_id=job.job_id,
            commission_id=payment.commission_id,
            now=now,
        )
        logger.info(
            "Commission created",
            commission_id=payment.commission_id,
            job_id=job.job_id,
            contractor_id=job.contractor_id,
            amount=str(amount),
        )
        return payment

    def adjust_amount(
        self,
        uow: UnitOfWork,
        payment: CommissionPayment,
        amount: Decimal,
        dispute_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CommissionPayment:
        """Overwrite the commission amount (dispute resolution)."""
        if amount < Decimal("0"):
            raise ValidationError(f"Commission amount cannot be negative: {amount}")
        self._require_outstanding(payment)
        previous = payment.commission_amount
        payment.commission_amount = amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
        payment.total_amount = payment.commission_amount + payment.vat_amount
        payment.adjusted_by_dispute_id = dispute_id
        uow.put("commissions", payment)
        uow.record_event(
            EventKind.COMMISSION_ADJUSTED,
            "system",
            {
                "commission_id": payment.commission_id,
                "job_id": payment.job_id,
                "previous_amount": str(previous),
                "amount": str(payment.commission_amount),
                "dispute_id": dispute_id,
            },
            now=now,
        )
        return payment

    def recalculate(
        self,
        uow: UnitOfWork,
        payment: CommissionPayment,
        final_amount: Decimal,
        now: Optional[datetime] = None,
    ) -> CommissionPayment:
        """Recompute from a new job value at the current rate."""
        self._require_outstanding(payment)
        rate = self._resolver.commission_rate()
        previous = payment.commission_amount
        payment.final_job_amount = final_amount
        payment.commission_rate = rate
        payment.commission_amount = compute_commission(final_amount, rate)
        payment.total_amount = payment.commission_amount + payment.vat_amount
        uow.put("commissions", payment)
        uow.record_event(
            EventKind.COMMISSION_ADJUSTED,
            "system",
            {
                "commission_id": payment.commission_id,
                "job_id": payment.job_id,
                "previous_amount": str(previous),
                "amount": str(payment.commission_amount),
                "final_amount": str(final_amount),
            },
            now=now,
        )
        return payment

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(
        self,
        uow: UnitOfWork,
        commission_id: str,
        external_payment_ref: str,
        now: Optional[datetime] = None,
    ) -> CommissionPayment:
        """PENDING/OVERDUE → PAID inside the caller's unit of work."""
        if not external_payment_ref:
            raise ValidationError("External payment reference is required")
        if now is None:
            now = datetime.now(timezone.utc)

        payment: CommissionPayment = uow.require("commissions", commission_id, for_update=True)
        self._require_outstanding(payment)
        reused = uow.find(
            "commissions",
            lambda c: c.external_payment_ref == external_payment_ref
            and c.commission_id != commission_id,
        )
        if reused:
            raise AlreadySettledError(
                f"Payment reference {external_payment_ref} already settled "
                f"commission {reused[0].commission_id}"
            )

        payment.transition_to(CommissionStatus.PAID)
        payment.paid_at = now
        payment.external_payment_ref = external_payment_ref
        uow.put("commissions", payment)
        uow.record_event(
            EventKind.COMMISSION_PAID,
            payment.contractor_id,
            {
                "commission_id": commission_id,
                "job_id": payment.job_id,
                "external_payment_ref": external_payment_ref,
                "amount": str(payment.total_amount),
            },
            now=now,
        )
        logger.info(
            "Commission paid",
            commission_id=commission_id,
            contractor_id=payment.contractor_id,
        )
        return payment

    def mark_paid(
        self,
        commission_id: str,
        external_payment_ref: str,
        now: Optional[datetime] = None,
    ) -> CommissionPayment:
        with self._store.transaction() as uow:
            return self.settle(uow, commission_id, external_payment_ref, now)

    def waive(
        self,
        commission_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> CommissionPayment:
        """PENDING/OVERDUE → WAIVED."""
        with self._store.transaction() as uow:
            payment: CommissionPayment = uow.require(
                "commissions", commission_id, for_update=True
            )
            self._require_outstanding(payment)
            payment.transition_to(CommissionStatus.WAIVED)
            payment.waived_by = admin_id
            uow.put("commissions", payment)
            uow.record_event(
                EventKind.COMMISSION_WAIVED,
                admin_id,
                {"commission_id": commission_id, "job_id": payment.job_id},
                now=now,
            )
            return payment

    # ------------------------------------------------------------------
    # Periodic checks
    # ------------------------------------------------------------------

    def mark_overdue(self, now: Optional[datetime] = None) -> list[str]:
        """Flip every due PENDING payment to OVERDUE.

        Each payment is its own unit of work. Returns the affected
        contractor ids, the trigger for account suspension.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        candidates = self._store.find(
            "commissions",
            lambda c: c.status == CommissionStatus.PENDING and c.due_date <= now,
        )
        affected: list[str] = []
        for candidate in candidates:
            with self._store.transaction() as uow:
                payment: CommissionPayment = uow.require(
                    "commissions", candidate.commission_id, for_update=True
                )
                if payment.status != CommissionStatus.PENDING or payment.due_date > now:
                    continue
                payment.transition_to(CommissionStatus.OVERDUE)
                uow.put("commissions", payment)
                uow.record_event(
                    EventKind.COMMISSION_OVERDUE,
                    "system",
                    {
                        "commission_id": payment.commission_id,
                        "job_id": payment.job_id,
                        "contractor_id": payment.contractor_id,
                    },
                    now=now,
                )
                self._outbox.notify(
                    uow,
                    payment.contractor_id,
                    NotificationKind.COMMISSION_OVERDUE,
                    "Commission payment overdue",
                    f"Commission of £{payment.total_amount} is overdue. "
                    "Your account may be suspended until it is paid.",
                    action_link=f"/dashboard/commissions/{payment.commission_id}",
                    job_id=payment.job_id,
                    commission_id=payment.commission_id,
                    now=now,
                )
            if payment.contractor_id not in affected:
                affected.append(payment.contractor_id)
            logger.warning(
                "Commission overdue",
                commission_id=payment.commission_id,
                contractor_id=payment.contractor_id,
            )
        return affected

    def send_reminders(self, now: Optional[datetime] = None) -> int:
        """Remind contractors of PENDING commissions approaching their due date."""
        if now is None:
            now = datetime.now(timezone.utc)

        thresholds = self._resolver.commission_reminder_hours()
        candidates = self._store.find(
            "commissions",
            lambda c: c.status == CommissionStatus.PENDING and c.due_date > now,
        )
        sent = 0
        for candidate in candidates:
            threshold = active_threshold(hours_remaining(candidate.due_date, now), thresholds)
            if threshold is None:
                continue
            with self._store.transaction() as uow:
                payment: CommissionPayment = uow.require(
                    "commissions", candidate.commission_id, for_update=True
                )
                if payment.status != CommissionStatus.PENDING:
                    continue
                remaining = hours_remaining(payment.due_date, now)
                if recently_reminded(
                    uow,
                    NotificationKind.COMMISSION_DUE,
                    lambda n: n.commission_id == payment.commission_id,
                    threshold,
                    now,
                ):
                    continue
                self._outbox.notify(
                    uow,
                    payment.contractor_id,
                    NotificationKind.COMMISSION_DUE,
                    "Commission payment reminder",
                    f"Commission of £{payment.total_amount} is due in {remaining} hour(s).",
                    action_link=f"/dashboard/commissions/{payment.commission_id}",
                    job_id=payment.job_id,
                    commission_id=payment.commission_id,
                    now=now,
                )
                uow.record_event(
                    EventKind.REMINDER_SENT,
                    "system",
                    {
                        "commission_id": payment.commission_id,
                        "threshold_hours": threshold,
                        "hours_remaining": remaining,
                    },
                    now=now,
                )
            sent += 1
        return sent

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, commission_id: str) -> CommissionPayment:
        payment = self._store.get("commissions", commission_id)
        if payment is None:
            raise NotFoundError(f"Unknown commission payment: {commission_id}")
        return payment

    def for_job(self, job_id: str) -> Optional[CommissionPayment]:
        found = self._store.find("commissions", lambda c: c.job_id == job_id)
        return found[0] if found else None

    def outstanding_for(self, contractor_id: str) -> list[CommissionPayment]:
        return self._store.find(
            "commissions",
            lambda c: c.contractor_id == contractor_id and c.is_outstanding,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _find_for_job(uow: UnitOfWork, job_id: str) -> Optional[CommissionPayment]:
        found = uow.find("commissions", lambda c: c.job_id == job_id)
        return found[0] if found else None

    @staticmethod
    def _require_outstanding(payment: CommissionPayment) -> None:
        if not payment.is_outstanding:
            raise AlreadySettledError(
                f"Commission {payment.commission_id} is {payment.status.value}"
            )
