"""Credit ledger models — contractor accounts, subscriptions, ledger entries.

Credits are whole units. The balance on ContractorAccount is a cached
projection: it must always equal the sum of the contractor's
CreditTransaction amounts.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class CreditKind(str, enum.Enum):
    """Classification of ledger entries."""
    ADDITION = "ADDITION"
    DEDUCTION = "DEDUCTION"
    WEEKLY_ALLOCATION = "WEEKLY_ALLOCATION"
    DISPUTE_REFUND = "DISPUTE_REFUND"


class AccountStatus(str, enum.Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    SUSPENDED = "SUSPENDED"


class KycStatus(str, enum.Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    OVERDUE = "OVERDUE"
    BYPASSED = "BYPASSED"


class SubscriptionPlan(str, enum.Enum):
    MONTHLY = "MONTHLY"
    SIX_MONTHS = "SIX_MONTHS"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


@dataclass
class ContractorAccount:
    """A contractor's ledger row and account standing."""
    contractor_id: str
    credits_balance: int = 0
    weekly_credit_limit: int = 0
    last_credit_reset: Optional[datetime] = None
    status: AccountStatus = AccountStatus.PENDING_APPROVAL
    kyc_status: KycStatus = KycStatus.NOT_REQUIRED
    kyc_due_by: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CreditTransaction:
    """An immutable ledger entry. DEDUCTION entries carry a negative amount."""
    transaction_id: str
    contractor_id: str
    amount: int
    kind: CreditKind
    created_at: datetime
    job_id: Optional[str] = None
    admin_id: Optional[str] = None
    description: str = ""


@dataclass
class Subscription:
    """Governs whether a contractor receives weekly credit allocations."""
    contractor_id: str
    external_ref: str
    plan: SubscriptionPlan
    status: SubscriptionStatus
    weekly_credit_limit: int
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        if self.status != SubscriptionStatus.ACTIVE:
            return False
        if self.current_period_start is not None and now < self.current_period_start:
            return False
        if self.current_period_end is not None and now > self.current_period_end:
            return False
        return True
