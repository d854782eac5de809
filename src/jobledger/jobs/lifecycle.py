"""Job lifecycle controller — the only writer of Job.status.

Every operation locks the job row, re-reads its status, validates the
(status, event) pair against the job state machine and writes the new
state in one unit of work. Completion creates the commission obligation
in that same unit of work. Notifications leave only after commit.

DISPUTED is entered and left exclusively through apply_dispute_transition,
which the dispute engine calls with its own open unit of work.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import structlog

from jobledger.compensation.commission import CommissionSettlement
from jobledger.errors import (
    AlreadySettledError,
    CapacityExceededError,
    InvalidStateError,
    NotFoundError,
    NotPartyError,
    ValidationError,
)
from jobledger.engine.job_state_machine import JobEvent, JobStateMachine
from jobledger.models.commission import CommissionPayment
from jobledger.models.job import SYSTEM_ACTOR, Job, JobAccess, JobStatus
from jobledger.models.notification import NotificationKind
from jobledger.notifications.outbox import NotificationOutbox
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork
from jobledger.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

_DISPUTE_EVENTS = frozenset({
    JobEvent.OPEN_DISPUTE,
    JobEvent.DISPUTE_COMPLETE,
    JobEvent.DISPUTE_RETURN_TO_WORK,
    JobEvent.DISPUTE_RETURN_TO_CONFIRMATION,
})


class JobLifecycleController:
    """Usage:
        jobs = JobLifecycleController(store, resolver, commissions, outbox)
        job = jobs.post_job("customer_1", "Fit kitchen", lead_price=Decimal("12.00"))
        jobs.assign_contractor(job.job_id, "customer_1", "contractor_1")
        jobs.propose_final_price(job.job_id, "contractor_1", Decimal("500.00"))
        jobs.confirm_final_price(job.job_id, "customer_1")
    """

    def __init__(
        self,
        store: Store,
        resolver: PolicyResolver,
        commissions: CommissionSettlement,
        outbox: NotificationOutbox,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._commissions = commissions
        self._outbox = outbox

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_job(
        self,
        customer_id: str,
        title: str,
        description: str = "",
        budget: Optional[Decimal] = None,
        lead_price: Decimal = Decimal("0"),
        lead_credit_cost: int = 1,
        max_contractors_per_job: int = 5,
        publish: bool = True,
        job_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """Create a job in DRAFT, or POSTED when publish is set."""
        if not customer_id:
            raise ValidationError("customer_id is required")
        if not title or not title.strip():
            raise ValidationError("Job title is required")
        if budget is not None and budget < Decimal("0"):
            raise ValidationError(f"Budget cannot be negative: {budget}")
        if lead_price < Decimal("0"):
            raise ValidationError(f"Lead price cannot be negative: {lead_price}")
        if lead_credit_cost < 1:
            raise ValidationError(f"Lead credit cost must be at least 1: {lead_credit_cost}")
        if max_contractors_per_job < 1:
            raise ValidationError(
                f"max_contractors_per_job must be at least 1: {max_contractors_per_job}"
            )
        if now is None:
            now = datetime.now(timezone.utc)
        if job_id is None:
            job_id = f"job_{uuid4().hex[:12]}"

        job = Job(
            job_id=job_id,
            customer_id=customer_id,
            title=title.strip(),
            description=description,
            budget=budget,
            lead_price=lead_price,
            lead_credit_cost=lead_credit_cost,
            max_contractors_per_job=max_contractors_per_job,
            created_at=now,
        )
        with self._store.transaction() as uow:
            if uow.get("jobs", job_id) is not None:
                raise ValidationError(f"Job ID already exists: {job_id}")
            uow.put("jobs", job)
            uow.record_event(
                EventKind.JOB_CREATED,
                customer_id,
                {"job_id": job_id, "title": job.title, "lead_price": str(lead_price)},
                now=now,
            )
            if publish:
                self._transition(uow, job, JobEvent.POST, customer_id, now)
                job.posted_at = now
                uow.put("jobs", job)
        logger.info("Job created", job_id=job_id, customer_id=customer_id, status=job.status.value)
        return job

    def publish_job(self, job_id: str, customer_id: str, now: Optional[datetime] = None) -> Job:
        """DRAFT → POSTED."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            self._require_customer(job, customer_id)
            self._transition(uow, job, JobEvent.POST, customer_id, now)
            job.posted_at = now
            uow.put("jobs", job)
        return job

    # ------------------------------------------------------------------
    # Assignment and final price
    # ------------------------------------------------------------------

    def assign_contractor(
        self,
        job_id: str,
        customer_id: str,
        contractor_id: str,
        now: Optional[datetime] = None,
    ) -> Job:
        """POSTED → IN_PROGRESS with the chosen contractor."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            self._require_customer(job, customer_id)
            JobStateMachine.next_status(job.status, JobEvent.ASSIGN)

            accesses = self._accesses(uow, job_id)
            if not any(a.contractor_id == contractor_id for a in accesses):
                raise ValidationError(
                    f"Contractor {contractor_id} has not accessed job {job_id}"
                )
            if len(accesses) > job.max_contractors_per_job:
                raise CapacityExceededError(
                    f"Job {job_id} has {len(accesses)} accesses, "
                    f"capacity {job.max_contractors_per_job}"
                )

            job.contractor_id = contractor_id
            self._transition(uow, job, JobEvent.ASSIGN, customer_id, now)
            uow.record_event(
                EventKind.JOB_ASSIGNED,
                customer_id,
                {"job_id": job_id, "contractor_id": contractor_id},
                now=now,
            )
            self._outbox.notify(
                uow,
                contractor_id,
                NotificationKind.JOB_ASSIGNED,
                "You have been hired",
                f"You were selected for job {job.title!r}.",
                action_link=f"/dashboard/jobs/{job_id}",
                job_id=job_id,
                now=now,
            )
        return job

    def propose_final_price(
        self,
        job_id: str,
        contractor_id: str,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> Job:
        """IN_PROGRESS → AWAITING_FINAL_PRICE_CONFIRMATION; starts the timeout."""
        if amount <= Decimal("0"):
            raise ValidationError(f"Final price must be positive: {amount}")
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            JobStateMachine.next_status(job.status, JobEvent.PROPOSE_FINAL_PRICE)
            if job.contractor_id != contractor_id:
                raise NotPartyError(
                    f"Contractor {contractor_id} is not assigned to job {job_id}"
                )
            self._transition(uow, job, JobEvent.PROPOSE_FINAL_PRICE, contractor_id, now)
            job.contractor_proposed_amount = amount
            job.final_price_proposed_at = now
            job.final_price_timeout_at = now + self._resolver.final_price_timeout()
            job.final_price_rejected_at = None
            job.final_price_rejection_reason = None
            uow.put("jobs", job)
            uow.record_event(
                EventKind.FINAL_PRICE_PROPOSED,
                contractor_id,
                {
                    "job_id": job_id,
                    "amount": str(amount),
                    "timeout_at": job.final_price_timeout_at.isoformat(),
                },
                now=now,
            )
            self._outbox.notify(
                uow,
                job.customer_id,
                NotificationKind.FINAL_PRICE_PROPOSED,
                "Confirm the final price",
                f"Your contractor proposed £{amount} for {job.title!r}. It will be "
                f"confirmed automatically on {job.final_price_timeout_at:%Y-%m-%d %H:%M} UTC.",
                action_link=f"/dashboard/jobs/{job_id}",
                job_id=job_id,
                now=now,
            )
        return job

    def confirm_final_price(
        self,
        job_id: str,
        actor: str,
        now: Optional[datetime] = None,
    ) -> Job:
        """AWAITING → COMPLETED, by the customer or by "system" after timeout."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            if actor == SYSTEM_ACTOR:
                if job.final_price_timeout_at is None or job.final_price_timeout_at > now:
                    raise InvalidStateError(
                        f"Job {job_id} has not reached its confirmation timeout"
                    )
            else:
                self._require_customer(job, actor)
            self._transition(uow, job, JobEvent.CONFIRM_FINAL_PRICE, actor, now)

            job.final_amount = job.contractor_proposed_amount
            job.final_price_confirmed_at = now
            job.final_price_confirmed_by = actor
            job.completed_at = now
            if actor == SYSTEM_ACTOR:
                job.admin_override_at = now
                job.admin_override_by = SYSTEM_ACTOR
            uow.put("jobs", job)
            uow.record_event(
                EventKind.FINAL_PRICE_CONFIRMED,
                actor,
                {"job_id": job_id, "final_amount": str(job.final_amount)},
                now=now,
            )
            self._commissions.create_for_completed_job(uow, job, now)

            auto = actor == SYSTEM_ACTOR
            self._outbox.notify(
                uow,
                job.contractor_id,
                NotificationKind.FINAL_PRICE_CONFIRMED,
                "Final price confirmed",
                f"£{job.final_amount} for {job.title!r} was "
                f"{'confirmed automatically' if auto else 'confirmed by the customer'}.",
                action_link=f"/dashboard/jobs/{job_id}",
                job_id=job_id,
                now=now,
            )
            if auto:
                self._outbox.notify(
                    uow,
                    job.customer_id,
                    NotificationKind.FINAL_PRICE_CONFIRMED,
                    "Final price confirmed automatically",
                    f"The proposed £{job.final_amount} for {job.title!r} was confirmed "
                    "because the confirmation window elapsed.",
                    action_link=f"/dashboard/jobs/{job_id}",
                    job_id=job_id,
                    now=now,
                )
        logger.info("Final price confirmed", job_id=job_id, actor=actor)
        return job

    def reject_final_price(
        self,
        job_id: str,
        customer_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Job:
        """AWAITING → IN_PROGRESS. Clears the proposal and its timeout."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            self._require_customer(job, customer_id)
            self._transition(uow, job, JobEvent.REJECT_FINAL_PRICE, customer_id, now)
            rejected_amount = job.contractor_proposed_amount
            job.contractor_proposed_amount = None
            job.final_price_timeout_at = None
            job.final_price_rejected_at = now
            job.final_price_rejection_reason = reason.strip()
            uow.put("jobs", job)
            uow.record_event(
                EventKind.FINAL_PRICE_REJECTED,
                customer_id,
                {"job_id": job_id, "amount": str(rejected_amount), "reason": reason},
                now=now,
            )
            self._outbox.notify(
                uow,
                job.contractor_id,
                NotificationKind.FINAL_PRICE_REJECTED,
                "Final price rejected",
                f"The customer rejected £{rejected_amount} for {job.title!r}: {reason}",
                action_link=f"/dashboard/jobs/{job_id}",
                job_id=job_id,
                now=now,
            )
        return job

    # ------------------------------------------------------------------
    # Cancellation and administrator actions
    # ------------------------------------------------------------------

    def cancel(
        self,
        job_id: str,
        reason: str,
        actor: str,
        now: Optional[datetime] = None,
    ) -> Job:
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            self._transition(uow, job, JobEvent.CANCEL, actor, now)
            job.cancellation_reason = reason
            job.cancelled_at = now
            uow.put("jobs", job)
            for user_id in (job.customer_id, job.contractor_id):
                if user_id is not None and user_id != actor:
                    self._outbox.notify(
                        uow,
                        user_id,
                        NotificationKind.JOB_CANCELLED,
                        "Job cancelled",
                        f"Job {job.title!r} was cancelled: {reason}",
                        job_id=job_id,
                        now=now,
                    )
        logger.info("Job cancelled", job_id=job_id, actor=actor)
        return job

    def admin_complete(
        self,
        job_id: str,
        admin_id: str,
        final_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """IN_PROGRESS/AWAITING → COMPLETED by administrator override."""
        if final_amount is not None and final_amount <= Decimal("0"):
            raise ValidationError(f"Final amount must be positive: {final_amount}")
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            amount = final_amount if final_amount is not None else job.contractor_proposed_amount
            if amount is None:
                raise ValidationError(
                    f"Job {job_id} has no proposed price; a final amount is required"
                )
            self._transition(uow, job, JobEvent.ADMIN_COMPLETE, admin_id, now)
            job.final_amount = amount
            job.completed_at = now
            job.admin_override_at = now
            job.admin_override_by = admin_id
            uow.put("jobs", job)
            self._commissions.create_for_completed_job(uow, job, now)
            if job.contractor_id is not None:
                self._outbox.notify(
                    uow,
                    job.contractor_id,
                    NotificationKind.JOB_COMPLETED,
                    "Job marked completed",
                    f"An administrator marked {job.title!r} completed at £{amount}.",
                    job_id=job_id,
                    now=now,
                )
        return job

    def adjust_job_value(
        self,
        job_id: str,
        admin_id: str,
        value: Decimal,
        now: Optional[datetime] = None,
    ) -> tuple[Job, Optional[CommissionPayment]]:
        """Set a COMPLETED job's final_amount and recalculate an outstanding commission."""
        if value <= Decimal("0"):
            raise ValidationError(f"Job value must be positive: {value}")
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            if job.status != JobStatus.COMPLETED:
                raise InvalidStateError(
                    f"Job {job_id} is {job.status.value}, not COMPLETED"
                )
            previous = job.final_amount
            job.final_amount = value
            uow.put("jobs", job)

            payment = None
            found = uow.find("commissions", lambda c: c.job_id == job_id)
            if found:
                payment = uow.get("commissions", found[0].commission_id, for_update=True)
                if not payment.is_outstanding:
                    raise AlreadySettledError(
                        f"Commission for job {job_id} is {payment.status.value}"
                    )
                self._commissions.recalculate(uow, payment, value, now)
            uow.record_event(
                EventKind.JOB_VALUE_ADJUSTED,
                admin_id,
                {
                    "job_id": job_id,
                    "previous": str(previous) if previous is not None else None,
                    "value": str(value),
                },
                now=now,
            )
        return job, payment

    def flag_job(
        self,
        job_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Job:
        if not reason:
            raise ValidationError("A flag reason is required")
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            job.is_flagged = True
            job.flag_reason = reason
            job.flagged_by = admin_id
            uow.put("jobs", job)
            uow.record_event(
                EventKind.JOB_FLAGGED,
                admin_id,
                {"job_id": job_id, "flagged": True, "reason": reason},
                now=now,
            )
        return job

    def unflag_job(self, job_id: str, admin_id: str, now: Optional[datetime] = None) -> Job:
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            job.is_flagged = False
            job.flag_reason = None
            job.flagged_by = None
            uow.put("jobs", job)
            uow.record_event(
                EventKind.JOB_FLAGGED, admin_id, {"job_id": job_id, "flagged": False}, now=now,
            )
        return job

    def update_capacity(
        self,
        job_id: str,
        admin_id: str,
        max_contractors: int,
        now: Optional[datetime] = None,
    ) -> Job:
        """Change max_contractors_per_job; never below existing accesses."""
        if max_contractors < 1:
            raise ValidationError(f"Capacity must be at least 1: {max_contractors}")
        with self._store.transaction() as uow:
            job = self._lock_job(uow, job_id)
            granted = len(self._accesses(uow, job_id))
            if max_contractors < granted:
                raise ValidationError(
                    f"Capacity {max_contractors} is below the {granted} existing accesses"
                )
            previous = job.max_contractors_per_job
            job.max_contractors_per_job = max_contractors
            uow.put("jobs", job)
            uow.record_event(
                EventKind.JOB_CAPACITY_UPDATED,
                admin_id,
                {"job_id": job_id, "previous": previous, "capacity": max_contractors},
                now=now,
            )
        return job

    # ------------------------------------------------------------------
    # Dispute hook
    # ------------------------------------------------------------------

    def apply_dispute_transition(
        self,
        uow: UnitOfWork,
        job: Job,
        event: JobEvent,
        actor: str,
        now: datetime,
    ) -> Job:
        """Enter or leave DISPUTED. Called only by the dispute engine."""
        if event not in _DISPUTE_EVENTS:
            raise InvalidStateError(f"{event.value} is not a dispute transition")
        self._transition(uow, job, event, actor, now)
        if event == JobEvent.DISPUTE_COMPLETE:
            if job.final_amount is None:
                job.final_amount = job.contractor_proposed_amount
            job.completed_at = now
            job.admin_override_at = now
            job.admin_override_by = actor
            uow.put("jobs", job)
            self._commissions.create_for_completed_job(uow, job, now)
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        job = self._store.get("jobs", job_id)
        if job is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        return job

    def accesses_for(self, job_id: str) -> list[JobAccess]:
        return self._store.find("accesses", lambda a: a.job_id == job_id)

    def jobs_by_status(self, status: JobStatus) -> list[Job]:
        return self._store.find("jobs", lambda j: j.status == status)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_job(uow: UnitOfWork, job_id: str) -> Job:
        return uow.require("jobs", job_id, for_update=True)

    @staticmethod
    def _accesses(uow: UnitOfWork, job_id: str) -> list[JobAccess]:
        return uow.find("accesses", lambda a: a.job_id == job_id)

    @staticmethod
    def _require_customer(job: Job, customer_id: str) -> None:
        if job.customer_id != customer_id:
            raise NotPartyError(f"{customer_id} does not own job {job.job_id}")

    @staticmethod
    def _transition(
        uow: UnitOfWork,
        job: Job,
        event: JobEvent,
        actor: str,
        now: Optional[datetime],
    ) -> None:
        previous = JobStateMachine.apply(job, event)
        uow.put("jobs", job)
        uow.record_event(
            EventKind.JOB_TRANSITION,
            actor,
            {
                "job_id": job.job_id,
                "event": event.value,
                "from": previous.value,
                "to": job.status.value,
            },
            now=now,
        )
        logger.info(
            "Job transition",
            job_id=job.job_id,
            job_event=event.value,
            from_status=previous.value,
            to_status=job.status.value,
        )
