"""Tests for the JSON snapshot store — proves typed records survive a reload."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from jobledger.errors import PersistenceError
from jobledger.models.commission import CommissionStatus
from jobledger.models.job import JobStatus
from jobledger.models.ledger import CreditKind
from jobledger.persistence.state_store import StateStore, to_primitive
from jobledger.persistence.store import InMemoryStore


NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class TestStateStore:
    def test_snapshot_rebuilds_typed_rows(self, tmp_path: Path, service, market) -> None:
        job = market.completed_job(Decimal("500.00"))
        path = tmp_path / "state.json"
        StateStore(path).save_store(service.store, NOW)

        restored = InMemoryStore()
        count = StateStore(path).load_into(restored)
        assert count > 0

        loaded = restored.get("jobs", job.job_id)
        assert loaded.status == JobStatus.COMPLETED
        assert loaded.final_amount == Decimal("500.00")
        assert loaded.completed_at == NOW

        payment = restored.find("commissions")[0]
        assert payment.status == CommissionStatus.PENDING
        assert payment.commission_amount == Decimal("25.00")

        kinds = {t.kind for t in restored.find("credit_transactions")}
        assert CreditKind.DEDUCTION in kinds

    def test_saved_timestamp(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        snapshots = StateStore(path)
        snapshots.save_store(InMemoryStore(), NOW)
        assert StateStore(path).saved_utc == NOW.isoformat()

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceError, match="Corrupt"):
            StateStore(path)

    def test_unknown_table(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text('{"tables": {"widgets": []}}', encoding="utf-8")
        with pytest.raises(PersistenceError, match="Unknown table"):
            StateStore(path).load_into(InMemoryStore())


class TestToPrimitive:
    def test_decimals_and_enums(self) -> None:
        assert to_primitive({"a": Decimal("1.50"), "s": JobStatus.POSTED}) == {
            "a": "1.50",
            "s": "POSTED",
        }

    def test_datetime(self) -> None:
        assert to_primitive(NOW) == "2026-03-02T09:00:00+00:00"
