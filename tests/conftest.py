"""Shared fixtures: a fully wired platform on the real config/ policy."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest

from jobledger.models.job import Job
from jobledger.payments.gateway import InMemoryGateway
from jobledger.policy.resolver import PolicyResolver
from jobledger.service import PlatformService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class RecordingSink:
    """Notification sink that records deliveries and can be told to fail."""

    def __init__(self) -> None:
        self.delivered: list[tuple[str, str, str, Optional[str]]] = []
        self.fail = False

    def notify(self, user_id, title, message, action_link=None) -> None:
        if self.fail:
            raise ConnectionError("sink down")
        self.delivered.append((user_id, title, message, action_link))

    def titles_for(self, user_id: str) -> list[str]:
        return [t for (u, t, _, _) in self.delivered if u == user_id]


class Marketplace:
    """Builds jobs and contractors in a given lifecycle stage."""

    def __init__(self, service: PlatformService) -> None:
        self.service = service

    def contractor(self, contractor_id: str = "contractor_1", credits: Optional[int] = None) -> str:
        onboarding = self.service.onboarding
        onboarding.register_contractor(contractor_id, now=NOW)
        onboarding.approve_bypassing_kyc(contractor_id, "admin_1", now=NOW)
        if credits is not None:
            delta = credits - self.service.ledger.balance(contractor_id)
            if delta:
                self.service.ledger.admin_adjust(contractor_id, delta, "admin_1", "test setup", now=NOW)
        return contractor_id

    def posted_job(
        self,
        customer_id: str = "customer_1",
        lead_price: Decimal = Decimal("12.00"),
        lead_credit_cost: int = 1,
        max_contractors: int = 5,
    ) -> Job:
        return self.service.jobs.post_job(
            customer_id,
            "Fit new kitchen",
            description="Replace units and worktops",
            budget=Decimal("800.00"),
            lead_price=lead_price,
            lead_credit_cost=lead_credit_cost,
            max_contractors_per_job=max_contractors,
            now=NOW,
        )

    def in_progress_job(
        self,
        contractor_id: str = "contractor_1",
        customer_id: str = "customer_1",
        lead_credit_cost: int = 1,
    ) -> Job:
        if self.service.onboarding.get(contractor_id) is None:
            self.contractor(contractor_id)
        job = self.posted_job(customer_id, lead_credit_cost=lead_credit_cost)
        self.service.access.purchase_with_credits(job.job_id, contractor_id, now=NOW)
        return self.service.jobs.assign_contractor(job.job_id, customer_id, contractor_id, now=NOW)

    def awaiting_job(
        self,
        amount: Decimal = Decimal("500.00"),
        contractor_id: str = "contractor_1",
        customer_id: str = "customer_1",
        proposed_at: datetime = NOW,
    ) -> Job:
        job = self.in_progress_job(contractor_id, customer_id)
        return self.service.jobs.propose_final_price(job.job_id, contractor_id, amount, now=proposed_at)

    def completed_job(
        self,
        amount: Decimal = Decimal("500.00"),
        contractor_id: str = "contractor_1",
        customer_id: str = "customer_1",
    ) -> Job:
        job = self.awaiting_job(amount, contractor_id, customer_id)
        return self.service.jobs.confirm_final_price(job.job_id, customer_id, now=NOW)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def service(resolver: PolicyResolver, sink: RecordingSink, gateway: InMemoryGateway) -> PlatformService:
    return PlatformService(resolver, sink=sink, gateway=gateway)


@pytest.fixture
def market(service: PlatformService) -> Marketplace:
    return Marketplace(service)
