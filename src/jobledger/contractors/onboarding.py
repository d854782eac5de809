"""Contractor onboarding — registration, approval and KYC deadlines.

A new contractor starts PENDING_APPROVAL with the configured welcome
credits. An administrator approves through one of two entry points:

- approve_with_kyc_deadline: ACTIVE now, KYC documents due within the
  configured deadline; a missed deadline pauses the account.
- approve_bypassing_kyc: ACTIVE with KYC marked BYPASSED.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from jobledger.errors import InvalidStateError, ValidationError
from jobledger.ledger.credit_ledger import CreditLedger
from jobledger.models.ledger import (
    AccountStatus,
    ContractorAccount,
    CreditKind,
    KycStatus,
    Subscription,
)
from jobledger.models.notification import NotificationKind
from jobledger.notifications.outbox import NotificationOutbox
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store, UnitOfWork
from jobledger.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

# Documents still owed; SUBMITTED accounts wait on review instead.
_KYC_OWED = frozenset({KycStatus.PENDING, KycStatus.REJECTED})


class ContractorOnboarding:

    def __init__(
        self,
        store: Store,
        resolver: PolicyResolver,
        ledger: CreditLedger,
        outbox: NotificationOutbox,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._ledger = ledger
        self._outbox = outbox

    def register_contractor(
        self,
        contractor_id: str,
        now: Optional[datetime] = None,
    ) -> ContractorAccount:
        """Create the account and grant welcome credits."""
        if not contractor_id:
            raise ValidationError("contractor_id is required")
        if now is None:
            now = datetime.now(timezone.utc)

        with self._store.transaction() as uow:
            if uow.get("accounts", contractor_id, for_update=True) is not None:
                raise ValidationError(f"Contractor already registered: {contractor_id}")
            account = ContractorAccount(contractor_id=contractor_id, created_at=now)
            uow.put("accounts", account)
            welcome = self._resolver.welcome_credits()
            if welcome > 0:
                self._ledger.credit(
                    uow, contractor_id, welcome, CreditKind.ADDITION, now=now,
                    description="Welcome credits",
                )
            uow.record_event(
                EventKind.CONTRACTOR_REGISTERED,
                contractor_id,
                {"contractor_id": contractor_id, "welcome_credits": welcome},
                now=now,
            )
            account = uow.get("accounts", contractor_id)
        logger.info("Contractor registered", contractor_id=contractor_id)
        return account

    def approve_with_kyc_deadline(
        self,
        contractor_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> ContractorAccount:
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            account = self._approve(uow, contractor_id, admin_id, now)
            account.kyc_status = KycStatus.PENDING
            account.kyc_due_by = now + self._resolver.kyc_deadline()
            uow.put("accounts", account)
            self._record_approval(uow, account, admin_id, "kyc_deadline", now)
        return account

    def approve_bypassing_kyc(
        self,
        contractor_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> ContractorAccount:
        if now is None:
            now = datetime.now(timezone.utc)
        with self._store.transaction() as uow:
            account = self._approve(uow, contractor_id, admin_id, now)
            account.kyc_status = KycStatus.BYPASSED
            account.kyc_due_by = None
            uow.put("accounts", account)
            self._record_approval(uow, account, admin_id, "kyc_bypassed", now)
        return account

    def submit_kyc(self, contractor_id: str, now: Optional[datetime] = None) -> ContractorAccount:
        with self._store.transaction() as uow:
            account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
            if account.kyc_status not in (KycStatus.PENDING, KycStatus.REJECTED, KycStatus.OVERDUE):
                raise InvalidStateError(
                    f"KYC for {contractor_id} is {account.kyc_status.value}; nothing to submit"
                )
            self._set_kyc(uow, account, KycStatus.SUBMITTED, contractor_id, now)
        return account

    def decide_kyc(
        self,
        contractor_id: str,
        admin_id: str,
        approved: bool,
        now: Optional[datetime] = None,
    ) -> ContractorAccount:
        """Approve or reject submitted KYC. Approval reactivates a paused account."""
        with self._store.transaction() as uow:
            account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
            if account.kyc_status != KycStatus.SUBMITTED:
                raise InvalidStateError(
                    f"KYC for {contractor_id} is {account.kyc_status.value}, not SUBMITTED"
                )
            if approved:
                account.kyc_due_by = None
                if account.status == AccountStatus.PAUSED:
                    account.status = AccountStatus.ACTIVE
            self._set_kyc(
                uow,
                account,
                KycStatus.APPROVED if approved else KycStatus.REJECTED,
                admin_id,
                now,
            )
        return account

    def process_kyc_deadlines(self, now: Optional[datetime] = None) -> list[str]:
        """Pause accounts whose KYC deadline passed. Returns contractor ids."""
        if now is None:
            now = datetime.now(timezone.utc)

        candidates = self._store.find(
            "accounts",
            lambda a: a.kyc_status in _KYC_OWED and a.kyc_due_by is not None and a.kyc_due_by < now,
        )
        paused: list[str] = []
        for candidate in candidates:
            with self._store.transaction() as uow:
                account: ContractorAccount = uow.require(
                    "accounts", candidate.contractor_id, for_update=True
                )
                if account.kyc_status not in _KYC_OWED or account.kyc_due_by is None:
                    continue
                if account.kyc_due_by >= now:
                    continue
                account.status = AccountStatus.PAUSED
                self._set_kyc(uow, account, KycStatus.OVERDUE, "system", now)
                uow.record_event(
                    EventKind.KYC_OVERDUE,
                    "system",
                    {"contractor_id": account.contractor_id},
                    now=now,
                )
                self._outbox.notify(
                    uow,
                    account.contractor_id,
                    NotificationKind.KYC_OVERDUE,
                    "Account paused",
                    "Your verification documents were not received in time. "
                    "Submit them to reactivate your account.",
                    action_link="/dashboard/kyc",
                    now=now,
                )
            paused.append(candidate.contractor_id)
            logger.warning("KYC deadline missed", contractor_id=candidate.contractor_id)
        return paused

    def get(self, contractor_id: str) -> Optional[ContractorAccount]:
        return self._store.get("accounts", contractor_id)

    def subscription(self, contractor_id: str) -> Optional[Subscription]:
        return self._store.get("subscriptions", contractor_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _approve(
        uow: UnitOfWork,
        contractor_id: str,
        admin_id: str,
        now: datetime,
    ) -> ContractorAccount:
        account: ContractorAccount = uow.require("accounts", contractor_id, for_update=True)
        if account.status != AccountStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Contractor {contractor_id} is {account.status.value}, not PENDING_APPROVAL"
            )
        account.status = AccountStatus.ACTIVE
        account.approved_by = admin_id
        account.approved_at = now
        return account

    @staticmethod
    def _record_approval(
        uow: UnitOfWork,
        account: ContractorAccount,
        admin_id: str,
        path: str,
        now: datetime,
    ) -> None:
        uow.record_event(
            EventKind.CONTRACTOR_APPROVED,
            admin_id,
            {
                "contractor_id": account.contractor_id,
                "path": path,
                "kyc_due_by": account.kyc_due_by.isoformat() if account.kyc_due_by else None,
            },
            now=now,
        )
        logger.info(
            "Contractor approved",
            contractor_id=account.contractor_id,
            admin_id=admin_id,
            path=path,
        )

    @staticmethod
    def _set_kyc(
        uow: UnitOfWork,
        account: ContractorAccount,
        status: KycStatus,
        actor: str,
        now: Optional[datetime],
    ) -> None:
        previous = account.kyc_status
        account.kyc_status = status
        uow.put("accounts", account)
        uow.record_event(
            EventKind.KYC_UPDATED,
            actor,
            {
                "contractor_id": account.contractor_id,
                "from": previous.value,
                "to": status.value,
            },
            now=now,
        )
