"""Credit ledger — every change to a contractor's credit balance.

Each change appends an immutable CreditTransaction and updates the cached
balance on ContractorAccount in the same unit of work, so the balance
always equals the sum of the contractor's entries. Debits lock the
contractor row and re-read the balance first; the balance never goes
negative.

The uow-level methods (debit, credit, weekly_allocate) join a transaction
the caller already holds, e.g. a credit purchase or a dispute resolution.
The standalone wrappers (debit_credits, credit_credits, allocate_weekly,
admin_adjust) open their own.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from jobledger.errors import (
    InsufficientCreditsError,
    SubscriptionInactiveError,
    ValidationError,
)
from jobledger.models.ledger import ContractorAccount, CreditKind, CreditTransaction
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork

logger = structlog.get_logger(__name__)

_CREDIT_KINDS = frozenset({
    CreditKind.ADDITION,
    CreditKind.WEEKLY_ALLOCATION,
    CreditKind.DISPUTE_REFUND,
})


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Credit amount must be a positive integer, got {amount!r}")


class CreditLedger:
    """Usage:
        ledger = CreditLedger(store)
        ledger.debit_credits("contractor_1", 2, job_id="job_1")
        ledger.balance("contractor_1")
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Operations joining an open unit of work
    # ------------------------------------------------------------------

    def debit(
        self,
        uow: UnitOfWork,
        contractor_id: str,
        amount: int,
        job_id: Optional[str],
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        """Remove credits. Raises InsufficientCreditsError if balance < amount."""
        _require_positive(amount)
        if now is None:
            now = datetime.now(timezone.utc)

        account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
        if account.credits_balance < amount:
            raise InsufficientCreditsError(
                f"Contractor {contractor_id} has {account.credits_balance} credits, "
                f"{amount} required"
            )
        return self._append(
            uow, account, -amount, CreditKind.DEDUCTION, job_id, admin_id, now,
            description=f"Debited {amount} credit(s)",
        )

    def credit(
        self,
        uow: UnitOfWork,
        contractor_id: str,
        amount: int,
        kind: CreditKind,
        job_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
        description: str = "",
    ) -> CreditTransaction:
        """Add credits with the given entry kind. DEDUCTION is rejected."""
        _require_positive(amount)
        if kind not in _CREDIT_KINDS:
            raise ValidationError(f"{kind.value} is not a crediting entry kind")
        if now is None:
            now = datetime.now(timezone.utc)

        account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
        return self._append(
            uow, account, amount, kind, job_id, admin_id, now,
            description=description or f"Credited {amount} credit(s)",
        )

    def weekly_allocate(
        self,
        uow: UnitOfWork,
        contractor_id: str,
        tier_limit: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Top the balance up to tier_limit. Returns the delta applied.

        Requires an active subscription. A balance already at or above the
        limit produces no ledger entry but still resets the weekly clock.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if tier_limit < 0:
            raise ValidationError(f"Weekly credit limit cannot be negative: {tier_limit}")

        subscription = uow.get("subscriptions", contractor_id)
        if subscription is None or not subscription.is_active(now):
            raise SubscriptionInactiveError(
                f"Contractor {contractor_id} has no active subscription"
            )

        account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
        delta = max(0, tier_limit - account.credits_balance)
        if delta > 0:
            self._append(
                uow, account, delta, CreditKind.WEEKLY_ALLOCATION, None, None, now,
                description=f"Weekly allocation to {tier_limit}",
            )
        account.last_credit_reset = now
        uow.put("accounts", account)
        uow.record_event(
            EventKind.WEEKLY_ALLOCATION,
            "system",
            {"contractor_id": contractor_id, "tier_limit": tier_limit, "delta": delta},
            now=now,
        )
        return delta

    # ------------------------------------------------------------------
    # Standalone operations
    # ------------------------------------------------------------------

    def debit_credits(
        self,
        contractor_id: str,
        amount: int,
        job_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        with self._store.transaction() as uow:
            return self.debit(uow, contractor_id, amount, job_id, admin_id, now)

    def credit_credits(
        self,
        contractor_id: str,
        amount: int,
        kind: CreditKind = CreditKind.ADDITION,
        job_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        with self._store.transaction() as uow:
            return self.credit(uow, contractor_id, amount, kind, job_id, admin_id, now)

    def allocate_weekly(
        self,
        contractor_id: str,
        tier_limit: int,
        now: Optional[datetime] = None,
    ) -> int:
        with self._store.transaction() as uow:
            return self.weekly_allocate(uow, contractor_id, tier_limit, now)

    def admin_adjust(
        self,
        contractor_id: str,
        delta: int,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        """Manual correction by an administrator. Negative delta debits."""
        if not reason:
            raise ValidationError("Adjustment reason is required")
        with self._store.transaction() as uow:
            if delta < 0:
                return self.debit(uow, contractor_id, -delta, None, admin_id, now)
            return self.credit(
                uow, contractor_id, delta, CreditKind.ADDITION, None, admin_id, now,
                description=reason,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def balance(self, contractor_id: str) -> int:
        account = self._store.get("accounts", contractor_id)
        return account.credits_balance if account is not None else 0

    def transactions(self, contractor_id: str) -> list[CreditTransaction]:
        entries = self._store.find(
            "credit_transactions", lambda t: t.contractor_id == contractor_id
        )
        return sorted(entries, key=lambda t: t.created_at)

    def verify_conservation(self, contractor_id: str) -> bool:
        """Cached balance equals the sum of ledger entries."""
        total = sum(t.amount for t in self.transactions(contractor_id))
        return total == self.balance(contractor_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _append(
        self,
        uow: UnitOfWork,
        account: ContractorAccount,
        amount: int,
        kind: CreditKind,
        job_id: Optional[str],
        admin_id: Optional[str],
        now: datetime,
        description: str,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            transaction_id=f"ctx_{uuid4().hex[:12]}",
            contractor_id=account.contractor_id,
            amount=amount,
            kind=kind,
            created_at=now,
            job_id=job_id,
            admin_id=admin_id,
            description=description,
        )
        account.credits_balance += amount
        uow.put("accounts", account)
        uow.put("credit_transactions", entry)
        uow.record_event(
            EventKind.CREDITS_DEBITED if amount < 0 else EventKind.CREDITS_CREDITED,
            admin_id or "system",
            {
                "contractor_id": account.contractor_id,
                "amount": amount,
                "kind": kind.value,
                "job_id": job_id,
                "balance": account.credits_balance,
            },
            now=now,
        )
        logger.info(
            "Ledger entry appended",
            contractor_id=account.contractor_id,
            amount=amount,
            kind=kind.value,
            balance=account.credits_balance,
        )
        return entry
