"""Commission models — the obligation a contractor owes on a completed job.

All monetary values use Decimal. No floats in finance.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional


class CommissionStatus(str, enum.Enum):
    """Lifecycle state of a commission payment.

    State machine:
        PENDING → PAID
        PENDING → OVERDUE → PAID
        PENDING | OVERDUE → WAIVED
    """
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    WAIVED = "WAIVED"


COMMISSION_TRANSITIONS: Dict[CommissionStatus, frozenset] = {
    CommissionStatus.PENDING: frozenset({
        CommissionStatus.PAID,
        CommissionStatus.OVERDUE,
        CommissionStatus.WAIVED,
    }),
    CommissionStatus.OVERDUE: frozenset({
        CommissionStatus.PAID,
        CommissionStatus.WAIVED,
    }),
    CommissionStatus.PAID: frozenset(),
    CommissionStatus.WAIVED: frozenset(),
}

OUTSTANDING = frozenset({CommissionStatus.PENDING, CommissionStatus.OVERDUE})


@dataclass
class CommissionPayment:
    """One per completed job that carries a commission obligation.

    Mutable — status changes on payment, overdue detection or waiver, and
    amounts change on dispute adjustment. Never deleted.
    """
    commission_id: str
    job_id: str
    contractor_id: str
    customer_id: str
    final_job_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    total_amount: Decimal
    due_date: datetime
    status: CommissionStatus = CommissionStatus.PENDING
    vat_amount: Decimal = Decimal("0")
    paid_at: Optional[datetime] = None
    external_payment_ref: Optional[str] = None
    waived_by: Optional[str] = None
    adjusted_by_dispute_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING

    def transition_to(self, new_state: CommissionStatus) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = COMMISSION_TRANSITIONS.get(self.status, frozenset())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid commission transition: {self.status.value} → {new_state.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        self.status = new_state
