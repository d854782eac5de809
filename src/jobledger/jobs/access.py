"""Lead access — contractors buy visibility into a posted job.

Two paths:
- credits: the job's lead_credit_cost is debited from the contractor's
  ledger in the same unit of work that records the JobAccess.
- direct payment: the gateway is asked to verify the payment reference
  before any transaction opens; the verified amount must equal the job's
  lead price.

Both paths require an ACTIVE contractor account, a POSTED job, no prior
access by the same contractor and free capacity.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from jobledger.errors import (
    CapacityExceededError,
    DuplicateAccessError,
    ExternalDependencyError,
    InvalidStateError,
    UniqueConstraintError,
    ValidationError,
)
from jobledger.ledger.credit_ledger import CreditLedger
from jobledger.models.job import AccessMethod, Job, JobAccess, JobStatus
from jobledger.models.ledger import AccountStatus, ContractorAccount
from jobledger.payments.gateway import PaymentGateway
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork

logger = structlog.get_logger(__name__)


class LeadAccessService:

    def __init__(self, store: Store, ledger: CreditLedger, gateway: PaymentGateway) -> None:
        self._store = store
        self._ledger = ledger
        self._gateway = gateway

    def purchase_with_credits(
        self,
        job_id: str,
        contractor_id: str,
        now: Optional[datetime] = None,
    ) -> JobAccess:
        if now is None:
            now = datetime.now(timezone.utc)
        try:
            with self._store.transaction() as uow:
                job = self._check_purchase(uow, job_id, contractor_id)
                self._ledger.debit(uow, contractor_id, job.lead_credit_cost, job_id, now=now)
                access = JobAccess(
                    access_id=f"acc_{uuid4().hex[:12]}",
                    job_id=job_id,
                    contractor_id=contractor_id,
                    method=AccessMethod.CREDIT,
                    credits_spent=job.lead_credit_cost,
                    granted_at=now,
                )
                self._record(uow, access, now)
        except UniqueConstraintError as e:
            raise DuplicateAccessError(str(e)) from e
        return access

    def purchase_with_payment(
        self,
        job_id: str,
        contractor_id: str,
        payment_reference: str,
        now: Optional[datetime] = None,
    ) -> JobAccess:
        if not payment_reference:
            raise ValidationError("A payment reference is required")
        if now is None:
            now = datetime.now(timezone.utc)

        # Gateway first, outside the transaction.
        try:
            verification = self._gateway.verify_payment(payment_reference)
        except ExternalDependencyError:
            raise
        except Exception as e:
            raise ExternalDependencyError(f"Payment verification failed: {e}") from e
        if not verification.succeeded:
            raise ValidationError(f"Payment {payment_reference} has not succeeded")

        try:
            with self._store.transaction() as uow:
                if uow.find("accesses", lambda a: a.payment_reference == payment_reference):
                    raise DuplicateAccessError(
                        f"Payment {payment_reference} already granted access"
                    )
                job = self._check_purchase(uow, job_id, contractor_id)
                if verification.amount != job.lead_price:
                    raise ValidationError(
                        f"Payment amount £{verification.amount} does not match "
                        f"lead price £{job.lead_price}"
                    )
                access = JobAccess(
                    access_id=f"acc_{uuid4().hex[:12]}",
                    job_id=job_id,
                    contractor_id=contractor_id,
                    method=AccessMethod.PAYMENT,
                    amount_paid=verification.amount,
                    payment_reference=payment_reference,
                    granted_at=now,
                )
                self._record(uow, access, now)
        except UniqueConstraintError as e:
            raise DuplicateAccessError(str(e)) from e
        return access

    def has_access(self, job_id: str, contractor_id: str) -> bool:
        return bool(self._store.find(
            "accesses",
            lambda a: a.job_id == job_id and a.contractor_id == contractor_id,
        ))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _check_purchase(uow: UnitOfWork, job_id: str, contractor_id: str) -> Job:
        job: Job = uow.require("jobs", job_id, for_update=True)
        account: ContractorAccount = uow.require("accounts", contractor_id)
        if account.status != AccountStatus.ACTIVE:
            raise InvalidStateError(
                f"Contractor {contractor_id} account is {account.status.value}"
            )
        if job.status != JobStatus.POSTED:
            raise InvalidStateError(f"Job {job_id} is {job.status.value}, not POSTED")
        accesses = uow.find("accesses", lambda a: a.job_id == job_id)
        if any(a.contractor_id == contractor_id for a in accesses):
            raise DuplicateAccessError(
                f"Contractor {contractor_id} already has access to job {job_id}"
            )
        if len(accesses) >= job.max_contractors_per_job:
            raise CapacityExceededError(
                f"Job {job_id} reached its limit of {job.max_contractors_per_job} contractors"
            )
        return job

    @staticmethod
    def _record(uow: UnitOfWork, access: JobAccess, now: datetime) -> None:
        uow.put("accesses", access)
        uow.record_event(
            EventKind.ACCESS_GRANTED,
            access.contractor_id,
            {
                "job_id": access.job_id,
                "contractor_id": access.contractor_id,
                "method": access.method.value,
                "credits_spent": access.credits_spent,
                "amount_paid": str(access.amount_paid),
            },
            now=now,
        )
        logger.info(
            "Job access granted",
            job_id=access.job_id,
            contractor_id=access.contractor_id,
            method=access.method.value,
        )
