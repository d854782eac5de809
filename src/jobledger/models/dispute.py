"""Dispute models — formal contests over a job's outcome."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class PartyRole(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    CONTRACTOR = "CONTRACTOR"
    ADMIN = "ADMIN"


class DisputeType(str, enum.Enum):
    WORK_QUALITY = "WORK_QUALITY"
    JOB_CONFIRMATION = "JOB_CONFIRMATION"
    CREDIT_REFUND = "CREDIT_REFUND"
    PROJECT_DELAY = "PROJECT_DELAY"
    PAYMENT_ISSUE = "PAYMENT_ISSUE"
    OTHER = "OTHER"


class DisputeStatus(str, enum.Enum):
    """Lifecycle status of a dispute.

    State machine:
        OPEN → UNDER_REVIEW → RESOLVED | CLOSED
        OPEN → RESOLVED | CLOSED
    """
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


OPEN_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


class DisputePriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class DisputeResolution(str, enum.Enum):
    CUSTOMER_FAVOR = "CUSTOMER_FAVOR"
    CONTRACTOR_FAVOR = "CONTRACTOR_FAVOR"
    MUTUAL_AGREEMENT = "MUTUAL_AGREEMENT"
    CREDIT_REFUNDED = "CREDIT_REFUNDED"
    COMMISSION_ADJUSTED = "COMMISSION_ADJUSTED"
    NO_ACTION = "NO_ACTION"


@dataclass
class Dispute:
    """A dispute raised by a customer or contractor against a job."""
    dispute_id: str
    job_id: str
    raised_by_user_id: str
    raised_by_role: PartyRole
    type: DisputeType
    title: str
    description: str
    status: DisputeStatus = DisputeStatus.OPEN
    priority: DisputePriority = DisputePriority.MEDIUM
    evidence_urls: list[str] = field(default_factory=list)
    resolution: Optional[DisputeResolution] = None
    resolution_notes: Optional[str] = None
    resolved_by_admin_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    credit_refunded: bool = False
    credit_refund_amount: Optional[int] = None
    commission_adjusted: bool = False
    commission_amount: Optional[Decimal] = None
    job_completed_override: bool = False
    closed_reason: Optional[str] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DISPUTE_STATUSES


@dataclass(frozen=True)
class DisputeResponse:
    """An append-only message on a dispute."""
    response_id: str
    dispute_id: str
    user_id: str
    user_role: PartyRole
    message: str
    created_at: datetime
    is_internal: bool = False
    attachments: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolutionActions:
    """Side effects an administrator attaches to a resolution."""
    refund_credits: bool = False
    credit_amount: Optional[int] = None
    adjust_commission: bool = False
    commission_amount: Optional[Decimal] = None
    complete_job: bool = False
