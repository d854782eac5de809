"""Job models — jobs posted by customers and the access grants contractors buy.

Mutable records. Status changes go through the job state machine
(jobledger.engine.job_state_machine); nothing else writes Job.status.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class JobStatus(str, enum.Enum):
    """Lifecycle state of a job.

    State machine:
        DRAFT → POSTED → IN_PROGRESS → AWAITING_FINAL_PRICE_CONFIRMATION → COMPLETED
        DRAFT | POSTED | IN_PROGRESS | AWAITING_* → CANCELLED
        IN_PROGRESS | AWAITING_* → DISPUTED → IN_PROGRESS | AWAITING_* | COMPLETED
    """
    DRAFT = "DRAFT"
    POSTED = "POSTED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_FINAL_PRICE_CONFIRMATION = "AWAITING_FINAL_PRICE_CONFIRMATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class AccessMethod(str, enum.Enum):
    """How a contractor paid for visibility into a job."""
    CREDIT = "CREDIT"
    PAYMENT = "PAYMENT"


SYSTEM_ACTOR = "system"


@dataclass
class Job:
    """A unit of work posted by a customer."""
    job_id: str
    customer_id: str
    title: str
    status: JobStatus = JobStatus.DRAFT
    description: str = ""
    budget: Optional[Decimal] = None
    lead_price: Decimal = Decimal("0")
    lead_credit_cost: int = 1
    max_contractors_per_job: int = 5
    contractor_id: Optional[str] = None
    contractor_proposed_amount: Optional[Decimal] = None
    final_price_proposed_at: Optional[datetime] = None
    final_price_timeout_at: Optional[datetime] = None
    final_amount: Optional[Decimal] = None
    final_price_confirmed_at: Optional[datetime] = None
    final_price_confirmed_by: Optional[str] = None
    final_price_rejected_at: Optional[datetime] = None
    final_price_rejection_reason: Optional[str] = None
    admin_override_at: Optional[datetime] = None
    admin_override_by: Optional[str] = None
    is_flagged: bool = False
    flag_reason: Optional[str] = None
    flagged_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None

    @property
    def has_proposed_price(self) -> bool:
        return self.contractor_proposed_amount is not None


@dataclass
class JobAccess:
    """Grants one contractor visibility into one job.

    Unique per (job_id, contractor_id). Immutable once created except for
    credits_refunded, which dispute resolution updates.
    """
    access_id: str
    job_id: str
    contractor_id: str
    method: AccessMethod
    credits_spent: int = 0
    amount_paid: Decimal = Decimal("0")
    payment_reference: Optional[str] = None
    granted_at: Optional[datetime] = None
    credits_refunded: int = 0
