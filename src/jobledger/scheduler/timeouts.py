"""Timeout scheduler — periodic batch passes over time-driven state.

Passes:
    auto_confirm            AWAITING jobs past their timeout → COMPLETED by "system"
    final_price_reminders   remind customers before auto-confirmation
    commission_checks       PENDING commissions past due → OVERDUE; due reminders
    weekly_allocations      top up subscribed contractors every reset period
    kyc_deadlines           pause contractors who missed their KYC deadline

Every pass is idempotent: candidates are selected from committed state,
then each one is re-checked under its row lock inside its own unit of
work. Overlapping runs within one store (a slow pass and the next tick)
therefore apply each transition at most once. CLI processes sharing a data
directory take the state lock in jobledger.cli and never interleave. A
failure on one record is logged and counted; the pass carries on.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from jobledger.compensation.commission import CommissionSettlement
from jobledger.contractors.onboarding import ContractorOnboarding
from jobledger.errors import InvalidStateError, SubscriptionInactiveError
from jobledger.jobs.lifecycle import JobLifecycleController
from jobledger.ledger.credit_ledger import CreditLedger
from jobledger.models.job import SYSTEM_ACTOR, Job, JobStatus
from jobledger.models.ledger import ContractorAccount
from jobledger.models.notification import NotificationKind
from jobledger.models.scheduler import PassRun
from jobledger.notifications.outbox import NotificationOutbox
from jobledger.notifications.reminders import (
    active_threshold,
    hours_remaining,
    recently_reminded,
)
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import Store
from jobledger.policy.resolver import PolicyResolver

logger = structlog.get_logger(__name__)

_APPLIED = "applied"
_SKIPPED = "skipped"
_FAILED = "failed"


@dataclass
class PassReport:
    """Outcome counts of one scheduler pass."""
    name: str
    examined: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def count(self, outcome: str) -> None:
        self.examined += 1
        if outcome == _APPLIED:
            self.applied += 1
        elif outcome == _SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class TimeoutScheduler:
    """Usage:
        scheduler = TimeoutScheduler(store, resolver, jobs, commissions,
                                     ledger, onboarding, outbox)
        scheduler.run_due()              # from cron or a loop
        scheduler.run_auto_confirmations(max_workers=4)
    """

    def __init__(
        self,
        store: Store,
        resolver: PolicyResolver,
        jobs: JobLifecycleController,
        commissions: CommissionSettlement,
        ledger: CreditLedger,
        onboarding: ContractorOnboarding,
        outbox: NotificationOutbox,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._jobs = jobs
        self._commissions = commissions
        self._ledger = ledger
        self._onboarding = onboarding
        self._outbox = outbox

    # ------------------------------------------------------------------
    # Auto-confirmation
    # ------------------------------------------------------------------

    def run_auto_confirmations(
        self,
        now: Optional[datetime] = None,
        max_workers: int = 1,
    ) -> PassReport:
        """Confirm every AWAITING job whose timeout has elapsed."""
        if now is None:
            now = datetime.now(timezone.utc)
        candidates = self._store.find(
            "jobs",
            lambda j: j.status == JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION
            and j.final_price_timeout_at is not None
            and j.final_price_timeout_at <= now,
        )
        job_ids = [j.job_id for j in candidates]

        def confirm(job_id: str) -> str:
            try:
                self._jobs.confirm_final_price(job_id, SYSTEM_ACTOR, now)
                return _APPLIED
            except InvalidStateError:
                # Confirmed, rejected or disputed since selection.
                return _SKIPPED
            except Exception:
                logger.exception("Auto-confirmation failed", job_id=job_id)
                return _FAILED

        report = PassReport(name="auto_confirm")
        if max_workers > 1 and len(job_ids) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                outcomes = list(pool.map(confirm, job_ids))
        else:
            outcomes = [confirm(job_id) for job_id in job_ids]
        for outcome in outcomes:
            report.count(outcome)
        self._log(report)
        return report

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def run_final_price_reminders(self, now: Optional[datetime] = None) -> PassReport:
        """Remind customers of pending confirmations, once per threshold window."""
        if now is None:
            now = datetime.now(timezone.utc)
        thresholds = self._resolver.final_price_reminder_hours()
        candidates = self._store.find(
            "jobs",
            lambda j: j.status == JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION
            and j.final_price_timeout_at is not None,
        )
        report = PassReport(name="final_price_reminders")
        for candidate in candidates:
            try:
                outcome = self._remind_final_price(candidate.job_id, thresholds, now)
            except Exception:
                logger.exception("Final price reminder failed", job_id=candidate.job_id)
                outcome = _FAILED
            report.count(outcome)
        self._log(report)
        return report

    def _remind_final_price(self, job_id: str, thresholds: list[int], now: datetime) -> str:
        with self._store.transaction() as uow:
            job: Job = uow.require("jobs", job_id, for_update=True)
            if (
                job.status != JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION
                or job.final_price_timeout_at is None
            ):
                return _SKIPPED
            remaining = hours_remaining(job.final_price_timeout_at, now)
            threshold = active_threshold(remaining, thresholds)
            if threshold is None:
                return _SKIPPED
            if recently_reminded(
                uow,
                NotificationKind.FINAL_PRICE_REMINDER,
                lambda n: n.job_id == job_id,
                threshold,
                now,
            ):
                return _SKIPPED
            self._outbox.notify(
                uow,
                job.customer_id,
                NotificationKind.FINAL_PRICE_REMINDER,
                "Final price confirmation reminder",
                f"Please confirm the final price of £{job.contractor_proposed_amount} for "
                f"{job.title!r}. It will be confirmed automatically in {remaining} hour(s).",
                action_link=f"/dashboard/jobs/{job_id}",
                job_id=job_id,
                now=now,
            )
            uow.record_event(
                EventKind.REMINDER_SENT,
                "system",
                {"job_id": job_id, "threshold_hours": threshold, "hours_remaining": remaining},
                now=now,
            )
        return _APPLIED

    # ------------------------------------------------------------------
    # Commission, allocation, KYC
    # ------------------------------------------------------------------

    def run_commission_checks(self, now: Optional[datetime] = None) -> PassReport:
        if now is None:
            now = datetime.now(timezone.utc)
        report = PassReport(name="commission_checks")
        overdue = self._commissions.mark_overdue(now)
        reminders = self._commissions.send_reminders(now)
        report.examined = report.applied = len(overdue) + reminders
        report.details = {"overdue_contractors": overdue, "reminders_sent": reminders}
        self._log(report)
        return report

    def run_weekly_allocations(self, now: Optional[datetime] = None) -> PassReport:
        """Top up contractors whose weekly reset period has elapsed."""
        if now is None:
            now = datetime.now(timezone.utc)
        period = self._resolver.weekly_reset_period()

        def due(account: ContractorAccount) -> bool:
            return account.weekly_credit_limit > 0 and (
                account.last_credit_reset is None
                or now - account.last_credit_reset >= period
            )

        report = PassReport(name="weekly_allocations")
        credited = 0
        for candidate in self._store.find("accounts", due):
            try:
                with self._store.transaction() as uow:
                    account = uow.require("accounts", candidate.contractor_id, for_update=True)
                    if not due(account):
                        outcome = _SKIPPED
                    else:
                        credited += self._ledger.weekly_allocate(
                            uow, account.contractor_id, account.weekly_credit_limit, now
                        )
                        outcome = _APPLIED
            except SubscriptionInactiveError:
                outcome = _SKIPPED
            except Exception:
                logger.exception(
                    "Weekly allocation failed", contractor_id=candidate.contractor_id
                )
                outcome = _FAILED
            report.count(outcome)
        report.details = {"credits_allocated": credited}
        self._log(report)
        return report

    def run_kyc_deadlines(self, now: Optional[datetime] = None) -> PassReport:
        if now is None:
            now = datetime.now(timezone.utc)
        paused = self._onboarding.process_kyc_deadlines(now)
        report = PassReport(name="kyc_deadlines", examined=len(paused), applied=len(paused))
        report.details = {"paused_contractors": paused}
        self._log(report)
        return report

    # ------------------------------------------------------------------
    # Cadence
    # ------------------------------------------------------------------

    def run_due(self, now: Optional[datetime] = None) -> list[PassReport]:
        """Run every pass whose interval has elapsed since its last run."""
        if now is None:
            now = datetime.now(timezone.utc)
        intervals = self._resolver.scheduler_intervals()
        passes: list[tuple[str, timedelta, Callable[[datetime], PassReport]]] = [
            ("auto_confirm", intervals.auto_confirm, self.run_auto_confirmations),
            ("final_price_reminders", intervals.final_price_reminders,
             self.run_final_price_reminders),
            ("commission_checks", intervals.commission_checks, self.run_commission_checks),
            ("weekly_allocations", intervals.weekly_allocations, self.run_weekly_allocations),
            ("kyc_deadlines", intervals.kyc_deadlines, self.run_kyc_deadlines),
        ]
        reports = []
        for name, interval, run in passes:
            if self._claim(name, interval, now):
                reports.append(run(now))
        return reports

    def last_runs(self) -> dict[str, datetime]:
        return {r.pass_name: r.last_run_at for r in self._store.find("scheduler_state")}

    def _claim(self, name: str, interval: timedelta, now: datetime) -> bool:
        with self._store.transaction() as uow:
            last: Optional[PassRun] = uow.get("scheduler_state", name, for_update=True)
            if last is not None and now - last.last_run_at < interval:
                return False
            uow.put("scheduler_state", PassRun(pass_name=name, last_run_at=now))
        return True

    @staticmethod
    def _log(report: PassReport) -> None:
        logger.info(
            "Scheduler pass finished",
            scheduler_pass=report.name,
            examined=report.examined,
            applied=report.applied,
            skipped=report.skipped,
            failed=report.failed,
        )
