"""Dispute resolution engine.

A customer or the assigned contractor may open one dispute per job at a
time. While it is open (OPEN or UNDER_REVIEW) the job sits in DISPUTED.

Resolution is a single unit of work:
    1. dispute → RESOLVED with resolution, notes and side-effect flags
    2. optional credit refund to the assigned contractor (DISPUTE_REFUND)
    3. job → COMPLETED (override) or back to AWAITING / IN_PROGRESS
    4. optional overwrite of the job's commission amount
Any failure in any step rolls all of them back.

Lock order: job row, then dispute row, then contractor or commission rows.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence
from uuid import uuid4

import structlog

from jobledger.compensation.commission import CommissionSettlement
from jobledger.engine.dispute_state_machine import DisputeStateMachine
from jobledger.engine.job_state_machine import JobEvent
from jobledger.errors import (
    DuplicateDisputeError,
    InvalidStateError,
    NotFoundError,
    NotPartyError,
    ValidationError,
)
from jobledger.jobs.lifecycle import JobLifecycleController
from jobledger.ledger.credit_ledger import CreditLedger
from jobledger.models.dispute import (
    Dispute,
    DisputePriority,
    DisputeResolution,
    DisputeResponse,
    DisputeStatus,
    DisputeType,
    PartyRole,
    ResolutionActions,
)
from jobledger.models.job import Job, JobStatus
from jobledger.models.ledger import CreditKind
from jobledger.models.notification import NotificationKind
from jobledger.notifications.outbox import NotificationOutbox
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork
from jobledger.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

_DISPUTABLE = frozenset({
    JobStatus.IN_PROGRESS,
    JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION,
})


class DisputeResolutionEngine:
    """Usage:
        disputes = DisputeResolutionEngine(store, resolver, jobs, ledger, commissions, outbox)
        d = disputes.open(job_id, customer_id, PartyRole.CUSTOMER,
                          DisputeType.WORK_QUALITY, "Leaking tap", "Still leaks")
        disputes.resolve(d.dispute_id, "admin_1", DisputeResolution.CREDIT_REFUNDED,
                         "Refunded", ResolutionActions(refund_credits=True, credit_amount=1))
    """

    def __init__(
        self,
        store: Store,
        resolver: PolicyResolver,
        jobs: JobLifecycleController,
        ledger: CreditLedger,
        commissions: CommissionSettlement,
        outbox: NotificationOutbox,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._jobs = jobs
        self._ledger = ledger
        self._commissions = commissions
        self._outbox = outbox

    # ------------------------------------------------------------------
    # Opening and responding
    # ------------------------------------------------------------------

    def open(
        self,
        job_id: str,
        raiser_id: str,
        raiser_role: PartyRole,
        dispute_type: DisputeType,
        title: str,
        description: str,
        evidence_urls: Sequence[str] = (),
        priority: DisputePriority = DisputePriority.MEDIUM,
        now: Optional[datetime] = None,
    ) -> Dispute:
        if raiser_role == PartyRole.ADMIN:
            raise ValidationError("Disputes are raised by a customer or contractor")
        if not title or not title.strip():
            raise ValidationError("Dispute title is required")
        if not description or not description.strip():
            raise ValidationError("Dispute description is required")
        if now is None:
            now = datetime.now(timezone.utc)

        with self._store.transaction() as uow:
            job: Job = uow.require("jobs", job_id, for_update=True)
            self._require_party(job, raiser_id, raiser_role)

            if uow.find("disputes", lambda d: d.job_id == job_id and d.is_open):
                raise DuplicateDisputeError(f"Job {job_id} already has an open dispute")
            if job.status not in _DISPUTABLE:
                raise InvalidStateError(
                    f"Job {job_id} is {job.status.value}; disputes need an active job"
                )

            dispute = Dispute(
                dispute_id=f"dsp_{uuid4().hex[:12]}",
                job_id=job_id,
                raised_by_user_id=raiser_id,
                raised_by_role=raiser_role,
                type=dispute_type,
                title=title.strip(),
                description=description.strip(),
                priority=priority,
                evidence_urls=list(evidence_urls),
                created_at=now,
            )
            uow.put("disputes", dispute)
            self._jobs.apply_dispute_transition(uow, job, JobEvent.OPEN_DISPUTE, raiser_id, now)
            uow.record_event(
                EventKind.DISPUTE_OPENED,
                raiser_id,
                {
                    "dispute_id": dispute.dispute_id,
                    "job_id": job_id,
                    "type": dispute_type.value,
                    "priority": priority.value,
                },
                now=now,
            )
            counterparty = (
                job.contractor_id if raiser_role == PartyRole.CUSTOMER else job.customer_id
            )
            if counterparty is not None:
                self._outbox.notify(
                    uow,
                    counterparty,
                    NotificationKind.DISPUTE_CREATED,
                    "A dispute was raised",
                    f"A dispute was raised on {job.title!r}: {dispute.title}",
                    action_link=f"/dashboard/disputes/{dispute.dispute_id}",
                    job_id=job_id,
                    now=now,
                )
        logger.info(
            "Dispute opened",
            dispute_id=dispute.dispute_id,
            job_id=job_id,
            raised_by=raiser_id,
        )
        return dispute

    def respond(
        self,
        dispute_id: str,
        actor_id: str,
        actor_role: PartyRole,
        message: str,
        is_internal: bool = False,
        attachments: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> DisputeResponse:
        """Append a response. A public response moves OPEN to UNDER_REVIEW."""
        if not message or not message.strip():
            raise ValidationError("Response message is required")
        if is_internal and actor_role != PartyRole.ADMIN:
            raise ValidationError("Only administrators can add internal notes")
        if now is None:
            now = datetime.now(timezone.utc)

        with self._store.transaction() as uow:
            dispute: Dispute = uow.require("disputes", dispute_id, for_update=True)
            if DisputeStateMachine.is_terminal(dispute.status):
                raise InvalidStateError(
                    f"Dispute {dispute_id} is {dispute.status.value}; responses are closed"
                )
            job: Job = uow.require("jobs", dispute.job_id)
            if actor_role != PartyRole.ADMIN:
                self._require_party(job, actor_id, actor_role)

            response = DisputeResponse(
                response_id=f"rsp_{uuid4().hex[:12]}",
                dispute_id=dispute_id,
                user_id=actor_id,
                user_role=actor_role,
                message=message.strip(),
                created_at=now,
                is_internal=is_internal,
                attachments=tuple(attachments),
            )
            uow.put("dispute_responses", response)

            if not is_internal:
                if dispute.status == DisputeStatus.OPEN:
                    DisputeStateMachine.apply_transition(dispute, DisputeStatus.UNDER_REVIEW)
                    uow.put("disputes", dispute)
                for user_id in (job.customer_id, job.contractor_id):
                    if user_id is not None and user_id != actor_id:
                        self._outbox.notify(
                            uow,
                            user_id,
                            NotificationKind.DISPUTE_RESPONSE,
                            "New dispute response",
                            f"There is a new response on dispute {dispute.title!r}.",
                            action_link=f"/dashboard/disputes/{dispute_id}",
                            job_id=job.job_id,
                            now=now,
                        )
            uow.record_event(
                EventKind.DISPUTE_RESPONSE,
                actor_id,
                {
                    "dispute_id": dispute_id,
                    "response_id": response.response_id,
                    "internal": is_internal,
                },
                now=now,
            )
        return response

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def resolve(
        self,
        dispute_id: str,
        admin_id: str,
        resolution: DisputeResolution,
        notes: str,
        actions: Optional[ResolutionActions] = None,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Resolve with side effects, all in one unit of work."""
        if actions is None:
            actions = ResolutionActions()
        self._validate_actions(actions)
        if now is None:
            now = datetime.now(timezone.utc)

        job_id = self._job_id_of(dispute_id)
        with self._store.transaction() as uow:
            job: Job = uow.require("jobs", job_id, for_update=True)
            dispute: Dispute = uow.require("disputes", dispute_id, for_update=True)

            # 1. Dispute record
            DisputeStateMachine.apply_transition(dispute, DisputeStatus.RESOLVED)
            dispute.resolution = resolution
            dispute.resolution_notes = notes
            dispute.resolved_by_admin_id = admin_id
            dispute.resolved_at = now
            dispute.credit_refunded = actions.refund_credits
            dispute.credit_refund_amount = actions.credit_amount if actions.refund_credits else None
            dispute.commission_adjusted = actions.adjust_commission
            dispute.commission_amount = (
                actions.commission_amount if actions.adjust_commission else None
            )
            dispute.job_completed_override = actions.complete_job
            uow.put("disputes", dispute)

            # 2. Credit refund
            if actions.refund_credits:
                self._refund(uow, job, actions.credit_amount, admin_id, now)

            # 3. Job status
            self._release_job(uow, job, admin_id, now, complete=actions.complete_job)

            # 4. Commission adjustment
            if actions.adjust_commission:
                found = uow.find("commissions", lambda c: c.job_id == job_id)
                if not found:
                    raise NotFoundError(f"No commission payment for job {job_id}")
                payment = uow.require("commissions", found[0].commission_id, for_update=True)
                self._commissions.adjust_amount(
                    uow, payment, actions.commission_amount, dispute_id, now
                )

            uow.record_event(
                EventKind.DISPUTE_RESOLVED,
                admin_id,
                {
                    "dispute_id": dispute_id,
                    "job_id": job_id,
                    "resolution": resolution.value,
                    "refund_credits": actions.credit_amount if actions.refund_credits else 0,
                    "commission_amount": (
                        str(actions.commission_amount) if actions.adjust_commission else None
                    ),
                    "complete_job": actions.complete_job,
                    "job_status": job.status.value,
                },
                now=now,
            )
            for user_id in (job.customer_id, job.contractor_id):
                if user_id is not None:
                    self._outbox.notify(
                        uow,
                        user_id,
                        NotificationKind.DISPUTE_RESOLVED,
                        "Dispute resolved",
                        f"Dispute {dispute.title!r} was resolved: "
                        f"{resolution.value.replace('_', ' ').lower()}.",
                        action_link=f"/dashboard/disputes/{dispute_id}",
                        job_id=job_id,
                        now=now,
                    )
        logger.info(
            "Dispute resolved",
            dispute_id=dispute_id,
            job_id=job_id,
            resolution=resolution.value,
            admin_id=admin_id,
        )
        return dispute

    def close(
        self,
        dispute_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Close without financial effects."""
        if not reason or not reason.strip():
            raise ValidationError("A closing reason is required")
        if now is None:
            now = datetime.now(timezone.utc)

        job_id = self._job_id_of(dispute_id)
        with self._store.transaction() as uow:
            job: Job = uow.require("jobs", job_id, for_update=True)
            dispute: Dispute = uow.require("disputes", dispute_id, for_update=True)
            DisputeStateMachine.apply_transition(dispute, DisputeStatus.CLOSED)
            dispute.closed_reason = reason.strip()
            dispute.closed_at = now
            uow.put("disputes", dispute)
            self._release_job(uow, job, admin_id, now, complete=False)
            uow.record_event(
                EventKind.DISPUTE_CLOSED,
                admin_id,
                {"dispute_id": dispute_id, "job_id": job_id, "reason": dispute.closed_reason},
                now=now,
            )
            for user_id in (job.customer_id, job.contractor_id):
                if user_id is not None:
                    self._outbox.notify(
                        uow,
                        user_id,
                        NotificationKind.DISPUTE_CLOSED,
                        "Dispute closed",
                        f"Dispute {dispute.title!r} was closed: {dispute.closed_reason}",
                        action_link=f"/dashboard/disputes/{dispute_id}",
                        job_id=job_id,
                        now=now,
                    )
        logger.info("Dispute closed", dispute_id=dispute_id, job_id=job_id)
        return dispute

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, dispute_id: str) -> Dispute:
        dispute = self._store.get("disputes", dispute_id)
        if dispute is None:
            raise NotFoundError(f"Unknown dispute: {dispute_id}")
        return dispute

    def open_dispute_for(self, job_id: str) -> Optional[Dispute]:
        found = self._store.find("disputes", lambda d: d.job_id == job_id and d.is_open)
        return found[0] if found else None

    def responses(self, dispute_id: str, include_internal: bool = False) -> list[DisputeResponse]:
        self.get(dispute_id)
        found = self._store.find(
            "dispute_responses",
            lambda r: r.dispute_id == dispute_id and (include_internal or not r.is_internal),
        )
        return sorted(found, key=lambda r: r.created_at)

    def disputes_for_user(self, user_id: str) -> list[Dispute]:
        """Disputes the user raised or that concern a job they are party to."""
        job_ids = {
            j.job_id
            for j in self._store.find(
                "jobs", lambda j: j.customer_id == user_id or j.contractor_id == user_id
            )
        }
        found = self._store.find(
            "disputes", lambda d: d.raised_by_user_id == user_id or d.job_id in job_ids
        )
        return sorted(found, key=lambda d: d.created_at, reverse=True)

    def stats(self) -> dict[str, Any]:
        disputes = self._store.find("disputes")
        by_status = Counter(d.status.value for d in disputes)
        by_priority = Counter(d.priority.value for d in disputes if d.is_open)
        return {
            "total": len(disputes),
            "by_status": {s.value: by_status.get(s.value, 0) for s in DisputeStatus},
            "open_by_priority": {p.value: by_priority.get(p.value, 0) for p in DisputePriority},
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _job_id_of(self, dispute_id: str) -> str:
        return self.get(dispute_id).job_id

    def _refund(
        self,
        uow: UnitOfWork,
        job: Job,
        amount: int,
        admin_id: str,
        now: datetime,
    ) -> None:
        if job.contractor_id is None:
            raise InvalidStateError(f"Job {job.job_id} has no contractor to refund")
        self._ledger.credit(
            uow,
            job.contractor_id,
            amount,
            CreditKind.DISPUTE_REFUND,
            job_id=job.job_id,
            admin_id=admin_id,
            now=now,
            description=f"Dispute refund for job {job.job_id}",
        )
        accesses = uow.find(
            "accesses",
            lambda a: a.job_id == job.job_id and a.contractor_id == job.contractor_id,
        )
        if accesses:
            access = accesses[0]
            access.credits_refunded += amount
            uow.put("accesses", access)

    def _release_job(
        self,
        uow: UnitOfWork,
        job: Job,
        admin_id: str,
        now: datetime,
        complete: bool,
    ) -> None:
        if complete:
            self._jobs.apply_dispute_transition(uow, job, JobEvent.DISPUTE_COMPLETE, admin_id, now)
        elif job.has_proposed_price:
            self._jobs.apply_dispute_transition(
                uow, job, JobEvent.DISPUTE_RETURN_TO_CONFIRMATION, admin_id, now
            )
            # The customer gets a fresh confirmation window.
            job.final_price_timeout_at = now + self._resolver.final_price_timeout()
            uow.put("jobs", job)
        else:
            self._jobs.apply_dispute_transition(
                uow, job, JobEvent.DISPUTE_RETURN_TO_WORK, admin_id, now
            )

    @staticmethod
    def _validate_actions(actions: ResolutionActions) -> None:
        if actions.refund_credits:
            amount = actions.credit_amount
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise ValidationError(
                    f"Refund needs a positive credit amount, got {amount!r}"
                )
        if actions.adjust_commission:
            if actions.commission_amount is None or actions.commission_amount < Decimal("0"):
                raise ValidationError(
                    f"Commission adjustment needs a non-negative amount, "
                    f"got {actions.commission_amount!r}"
                )

    @staticmethod
    def _require_party(job: Job, user_id: str, role: PartyRole) -> None:
        if role == PartyRole.CUSTOMER and job.customer_id == user_id:
            return
        if role == PartyRole.CONTRACTOR and job.contractor_id == user_id:
            return
        raise NotPartyError(f"{user_id} is not the {role.value.lower()} on job {job.job_id}")
