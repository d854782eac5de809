"""jobledger service — unified facade for the marketplace engine.

This is the primary interface for programmatic access. It wires every
component against one store and one policy:
- Contractor onboarding (registration, approval, KYC)
- Job lifecycle (post, assign, final price, cancel, admin overrides)
- Lead access (credits or direct payment)
- Credit ledger and commission settlement
- Disputes (open, respond, resolve, close)
- Gateway webhooks and the timeout scheduler

Every operation returns a ServiceResult. Expected failures carry the
error's code and message; anything unexpected is logged with a
correlation id and reported generically. Committed state is never
reported as failed because notification delivery failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

import structlog

from jobledger.compensation.commission import CommissionSettlement
from jobledger.contractors.onboarding import ContractorOnboarding
from jobledger.disputes.engine import DisputeResolutionEngine
from jobledger.errors import ConfigurationError, PlatformError
from jobledger.jobs.access import LeadAccessService
from jobledger.jobs.lifecycle import JobLifecycleController
from jobledger.ledger.credit_ledger import CreditLedger
from jobledger.models.dispute import (
    DisputePriority,
    DisputeResolution,
    DisputeType,
    PartyRole,
    ResolutionActions,
)
from jobledger.models.job import JobStatus
from jobledger.notifications.outbox import LoggingSink, NotificationOutbox, NotificationSink
from jobledger.payments.gateway import InMemoryGateway, PaymentGateway
from jobledger.payments.webhooks import WebhookEvent, WebhookProcessor
from jobledger.persistence.state_store import to_primitive
from jobledger.persistence.store import InMemoryStore, Store
from jobledger.policy.resolver import PolicyResolver
from jobledger.scheduler.timeouts import TimeoutScheduler

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    retryable: bool = False
    correlation_id: Optional[str] = None


class PlatformService:
    """Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = PlatformService(resolver)

        service.register_contractor("contractor_1")
        service.approve_contractor("contractor_1", "admin_1")
        result = service.post_job("customer_1", "Fit kitchen", lead_price=Decimal("12"))
        job_id = result.data["job_id"]
        service.purchase_access_with_credits(job_id, "contractor_1")
        service.assign_contractor(job_id, "customer_1", "contractor_1")
        service.propose_final_price(job_id, "contractor_1", Decimal("500.00"))
        service.confirm_final_price(job_id, "customer_1")
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: Optional[Store] = None,
        sink: Optional[NotificationSink] = None,
        gateway: Optional[PaymentGateway] = None,
        auto_flush: bool = True,
    ) -> None:
        if store is None:
            store = InMemoryStore(lock_timeout_seconds=resolver.lock_timeout_seconds())
        if not callable(getattr(store, "transaction", None)):
            raise ConfigurationError("Store does not support transactions")

        self._resolver = resolver
        self._store = store
        self._auto_flush = auto_flush
        self.outbox = NotificationOutbox(
            sink if sink is not None else LoggingSink(),
            max_attempts=resolver.notification_max_attempts(),
        )
        self.gateway = gateway if gateway is not None else InMemoryGateway()
        self.ledger = CreditLedger(store)
        self.commissions = CommissionSettlement(store, resolver, self.outbox)
        self.jobs = JobLifecycleController(store, resolver, self.commissions, self.outbox)
        self.access = LeadAccessService(store, self.ledger, self.gateway)
        self.disputes = DisputeResolutionEngine(
            store, resolver, self.jobs, self.ledger, self.commissions, self.outbox
        )
        self.onboarding = ContractorOnboarding(store, resolver, self.ledger, self.outbox)
        self.webhooks = WebhookProcessor(store, self.commissions, self.outbox)
        self.scheduler = TimeoutScheduler(
            store, resolver, self.jobs, self.commissions,
            self.ledger, self.onboarding, self.outbox,
        )

    @property
    def store(self) -> Store:
        return self._store

    # ------------------------------------------------------------------
    # Contractors
    # ------------------------------------------------------------------

    def register_contractor(self, contractor_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run(
            "register_contractor",
            lambda: self.onboarding.register_contractor(contractor_id, now),
        )

    def approve_contractor(
        self,
        contractor_id: str,
        admin_id: str,
        bypass_kyc: bool = False,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        approve = (
            self.onboarding.approve_bypassing_kyc
            if bypass_kyc
            else self.onboarding.approve_with_kyc_deadline
        )
        return self._run("approve_contractor", lambda: approve(contractor_id, admin_id, now))

    def submit_kyc(self, contractor_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run("submit_kyc", lambda: self.onboarding.submit_kyc(contractor_id, now))

    def decide_kyc(
        self,
        contractor_id: str,
        admin_id: str,
        approved: bool,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "decide_kyc",
            lambda: self.onboarding.decide_kyc(contractor_id, admin_id, approved, now),
        )

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def get_balance(self, contractor_id: str) -> ServiceResult:
        return self._run(
            "get_balance",
            lambda: {
                "contractor_id": contractor_id,
                "balance": self.ledger.balance(contractor_id),
                "conserved": self.ledger.verify_conservation(contractor_id),
            },
        )

    def admin_adjust_credits(
        self,
        contractor_id: str,
        delta: int,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "admin_adjust_credits",
            lambda: self.ledger.admin_adjust(contractor_id, delta, admin_id, reason, now),
        )

    # ------------------------------------------------------------------
    # Jobs
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
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "post_job",
            lambda: self.jobs.post_job(
                customer_id, title, description, budget, lead_price,
                lead_credit_cost, max_contractors_per_job, publish, now=now,
            ),
        )

    def publish_job(self, job_id: str, customer_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run("publish_job", lambda: self.jobs.publish_job(job_id, customer_id, now))

    def purchase_access_with_credits(
        self,
        job_id: str,
        contractor_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "purchase_access_with_credits",
            lambda: self.access.purchase_with_credits(job_id, contractor_id, now),
        )

    def purchase_access_with_payment(
        self,
        job_id: str,
        contractor_id: str,
        payment_reference: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "purchase_access_with_payment",
            lambda: self.access.purchase_with_payment(job_id, contractor_id, payment_reference, now),
        )

    def assign_contractor(
        self,
        job_id: str,
        customer_id: str,
        contractor_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "assign_contractor",
            lambda: self.jobs.assign_contractor(job_id, customer_id, contractor_id, now),
        )

    def propose_final_price(
        self,
        job_id: str,
        contractor_id: str,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "propose_final_price",
            lambda: self.jobs.propose_final_price(job_id, contractor_id, amount, now),
        )

    def confirm_final_price(self, job_id: str, actor: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run(
            "confirm_final_price",
            lambda: self.jobs.confirm_final_price(job_id, actor, now),
        )

    def reject_final_price(
        self,
        job_id: str,
        customer_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "reject_final_price",
            lambda: self.jobs.reject_final_price(job_id, customer_id, reason, now),
        )

    def cancel_job(self, job_id: str, reason: str, actor: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run("cancel_job", lambda: self.jobs.cancel(job_id, reason, actor, now))

    def admin_complete_job(
        self,
        job_id: str,
        admin_id: str,
        final_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "admin_complete_job",
            lambda: self.jobs.admin_complete(job_id, admin_id, final_amount, now),
        )

    def adjust_job_value(
        self,
        job_id: str,
        admin_id: str,
        value: Decimal,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def op() -> dict[str, Any]:
            job, payment = self.jobs.adjust_job_value(job_id, admin_id, value, now)
            return {"job": to_primitive(job), "commission": to_primitive(payment)}
        return self._run("adjust_job_value", op)

    def flag_job(self, job_id: str, admin_id: str, reason: str) -> ServiceResult:
        return self._run("flag_job", lambda: self.jobs.flag_job(job_id, admin_id, reason))

    def unflag_job(self, job_id: str, admin_id: str) -> ServiceResult:
        return self._run("unflag_job", lambda: self.jobs.unflag_job(job_id, admin_id))

    def update_job_capacity(self, job_id: str, admin_id: str, max_contractors: int) -> ServiceResult:
        return self._run(
            "update_job_capacity",
            lambda: self.jobs.update_capacity(job_id, admin_id, max_contractors),
        )

    def get_job(self, job_id: str) -> ServiceResult:
        return self._run("get_job", lambda: self.jobs.get(job_id))

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    def mark_commission_paid(
        self,
        commission_id: str,
        external_payment_ref: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "mark_commission_paid",
            lambda: self.commissions.mark_paid(commission_id, external_payment_ref, now),
        )

    def waive_commission(self, commission_id: str, admin_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run(
            "waive_commission",
            lambda: self.commissions.waive(commission_id, admin_id, now),
        )

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
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
    ) -> ServiceResult:
        return self._run(
            "open_dispute",
            lambda: self.disputes.open(
                job_id, raiser_id, raiser_role, dispute_type, title, description,
                evidence_urls, priority, now,
            ),
        )

    def respond_to_dispute(
        self,
        dispute_id: str,
        actor_id: str,
        actor_role: PartyRole,
        message: str,
        is_internal: bool = False,
        attachments: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "respond_to_dispute",
            lambda: self.disputes.respond(
                dispute_id, actor_id, actor_role, message, is_internal, attachments, now,
            ),
        )

    def resolve_dispute(
        self,
        dispute_id: str,
        admin_id: str,
        resolution: DisputeResolution,
        notes: str,
        actions: Optional[ResolutionActions] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "resolve_dispute",
            lambda: self.disputes.resolve(dispute_id, admin_id, resolution, notes, actions, now),
        )

    def close_dispute(
        self,
        dispute_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "close_dispute",
            lambda: self.disputes.close(dispute_id, admin_id, reason, now),
        )

    def dispute_stats(self) -> ServiceResult:
        return self._run("dispute_stats", self.disputes.stats)

    # ------------------------------------------------------------------
    # Integration and scheduling
    # ------------------------------------------------------------------

    def handle_webhook(self, event: WebhookEvent, now: Optional[datetime] = None) -> ServiceResult:
        return self._run(
            "handle_webhook",
            lambda: {"receipt_id": event.receipt_id, "outcome": self.webhooks.handle(event, now)},
        )

    def run_scheduler(self, now: Optional[datetime] = None) -> ServiceResult:
        """Run every scheduler pass whose interval has elapsed."""
        return self._run(
            "run_scheduler",
            lambda: {"passes": [to_primitive(r) for r in self.scheduler.run_due(now)]},
        )

    def flush_notifications(self) -> ServiceResult:
        return self._run("flush_notifications", self.outbox.flush)

    def status(self) -> dict[str, Any]:
        jobs = self._store.find("jobs")
        by_status = {s.value: 0 for s in JobStatus}
        for job in jobs:
            by_status[job.status.value] += 1
        return {
            "jobs": by_status,
            "contractors": len(self._store.find("accounts")),
            "outstanding_commissions": len(
                self._store.find("commissions", lambda c: c.is_outstanding)
            ),
            "disputes": self.disputes.stats(),
            "pending_notifications": len(self.outbox.pending),
            "dead_letters": len(self.outbox.dead_letters),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], Any]) -> ServiceResult:
        try:
            value = fn()
        except PlatformError as e:
            logger.info(
                "Operation rejected",
                operation=operation,
                error_code=e.code,
                error=e.message,
            )
            return ServiceResult(
                success=False,
                errors=[e.message],
                error_code=e.code,
                retryable=e.retryable,
            )
        except Exception:
            correlation_id = uuid4().hex
            logger.exception(
                "Operation failed unexpectedly",
                operation=operation,
                correlation_id=correlation_id,
            )
            return ServiceResult(
                success=False,
                errors=[f"Internal error (correlation id {correlation_id})"],
                error_code="internal_error",
                correlation_id=correlation_id,
            )

        if self._auto_flush:
            self.outbox.flush()
        data = value if isinstance(value, dict) else to_primitive(value)
        return ServiceResult(success=True, data=data if isinstance(data, dict) else {"value": data})
