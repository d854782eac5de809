"""Tests for the transactional store — proves atomic commit, rollback,
row locking and unique index enforcement."""

import threading
import time
from datetime import datetime, timezone
from typing import Optional

import pytest

from jobledger.errors import (
    LockTimeoutError,
    NotFoundError,
    PersistenceError,
    UniqueConstraintError,
)
from jobledger.models.job import AccessMethod, Job, JobAccess
from jobledger.persistence.event_log import EventKind
from jobledger.persistence.store import InMemoryStore, Store


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _job(job_id: str = "job_1", title: str = "Fit kitchen") -> Job:
    return Job(job_id=job_id, customer_id="customer_1", title=title)


def _access(access_id: str, contractor_id: str, ref: Optional[str] = None) -> JobAccess:
    return JobAccess(
        access_id=access_id,
        job_id="job_1",
        contractor_id=contractor_id,
        method=AccessMethod.PAYMENT if ref else AccessMethod.CREDIT,
        payment_reference=ref,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(lock_timeout_seconds=0.2)


class TestCommitAndRollback:
    def test_satisfies_store_port(self, store: InMemoryStore) -> None:
        assert isinstance(store, Store)

    def test_commit_makes_rows_and_events_visible(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
            uow.record_event(EventKind.JOB_CREATED, "customer_1", {"job_id": "job_1"}, now=_now())
            assert store.get("jobs", "job_1") is None
        assert store.get("jobs", "job_1").title == "Fit kitchen"
        assert store.event_log.count == 1

    def test_exception_discards_everything(self, store: InMemoryStore) -> None:
        with pytest.raises(RuntimeError):
            with store.transaction() as uow:
                uow.put("jobs", _job())
                uow.record_event(EventKind.JOB_CREATED, "customer_1", {"job_id": "job_1"})
                raise RuntimeError("boom")
        assert store.get("jobs", "job_1") is None
        assert store.event_log.count == 0

    def test_failed_audit_write_commits_nothing(self, store: InMemoryStore, monkeypatch) -> None:
        def disk_full(records):
            raise PersistenceError("audit log unavailable")

        monkeypatch.setattr(store.event_log, "append_all", disk_full)
        with pytest.raises(PersistenceError):
            with store.transaction() as uow:
                uow.put("jobs", _job())
                uow.record_event(EventKind.JOB_CREATED, "customer_1", {"job_id": "job_1"})
        assert store.get("jobs", "job_1") is None
        assert store.event_log.count == 0

    def test_rejected_event_batch_leaves_rows_and_log_unchanged(
        self, store: InMemoryStore, monkeypatch
    ) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
            uow.record_event(EventKind.JOB_CREATED, "customer_1", {"job_id": "job_1"})
        existing = store.event_log.last_event
        append_all = store.event_log.append_all
        # Replaying a committed event makes the whole batch a duplicate
        monkeypatch.setattr(
            store.event_log, "append_all", lambda records: append_all(records + [existing])
        )
        with pytest.raises(PersistenceError):
            with store.transaction() as uow:
                row = uow.require("jobs", "job_1", for_update=True)
                row.title = "Paint fence"
                uow.put("jobs", row)
                uow.record_event(EventKind.JOB_TRANSITION, "customer_1", {"job_id": "job_1"})
        assert store.get("jobs", "job_1").title == "Fit kitchen"
        assert store.event_log.count == 1
        assert store.event_log.last_event.event_id == existing.event_id

    def test_reads_are_private_copies(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
        with store.transaction() as uow:
            job = uow.get("jobs", "job_1")
            job.title = "Changed"
            # Not put: never written back
        assert store.get("jobs", "job_1").title == "Fit kitchen"

    def test_require_unknown_raises(self, store: InMemoryStore) -> None:
        with pytest.raises(NotFoundError, match="Unknown job"):
            with store.transaction() as uow:
                uow.require("jobs", "nope")

    def test_find_sees_staged_rows(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job("job_1"))
        with store.transaction() as uow:
            uow.put("jobs", _job("job_2"))
            assert {j.job_id for j in uow.find("jobs")} == {"job_1", "job_2"}
            assert len(store.find("jobs")) == 1


class TestAfterCommit:
    def test_runs_after_commit_only(self, store: InMemoryStore) -> None:
        calls = []
        with store.transaction() as uow:
            uow.put("jobs", _job())
            uow.after_commit(lambda: calls.append(store.get("jobs", "job_1") is not None))
            assert calls == []
        assert calls == [True]

    def test_not_run_on_rollback(self, store: InMemoryStore) -> None:
        calls = []
        with pytest.raises(ValueError):
            with store.transaction() as uow:
                uow.after_commit(lambda: calls.append(1))
                raise ValueError("rollback")
        assert calls == []

    def test_failing_hook_does_not_reverse_commit(self, store: InMemoryStore) -> None:
        def explode() -> None:
            raise ConnectionError("sink down")

        with store.transaction() as uow:
            uow.put("jobs", _job())
            uow.after_commit(explode)
        assert store.get("jobs", "job_1") is not None


class TestUniqueIndexes:
    def test_duplicate_job_contractor_pair_rejected(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("accesses", _access("acc_1", "contractor_1"))
        with pytest.raises(UniqueConstraintError):
            with store.transaction() as uow:
                uow.put("accesses", _access("acc_2", "contractor_1"))
                uow.put("jobs", _job())
        assert store.count("accesses") == 1
        assert store.get("jobs", "job_1") is None

    def test_duplicate_payment_reference_rejected(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("accesses", _access("acc_1", "contractor_1", ref="pi_1"))
        with pytest.raises(UniqueConstraintError):
            with store.transaction() as uow:
                uow.put("accesses", _access("acc_2", "contractor_2", ref="pi_1"))

    def test_none_values_not_indexed(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("accesses", _access("acc_1", "contractor_1"))
            uow.put("accesses", _access("acc_2", "contractor_2"))
        assert store.count("accesses") == 2


class TestRowLocks:
    def test_lock_timeout_is_retryable(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
        with store.transaction() as holder:
            holder.get("jobs", "job_1", for_update=True)
            with pytest.raises(LockTimeoutError) as exc_info:
                with store.transaction() as waiter:
                    waiter.get("jobs", "job_1", for_update=True)
        assert exc_info.value.retryable is True

    def test_lock_released_after_commit(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
        with store.transaction() as uow:
            uow.get("jobs", "job_1", for_update=True)
        with store.transaction() as uow:
            assert uow.get("jobs", "job_1", for_update=True) is not None

    def test_for_update_rereads_committed_state(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
        with store.transaction() as stale:
            assert stale.get("jobs", "job_1").title == "Fit kitchen"
            with store.transaction() as writer:
                job = writer.get("jobs", "job_1", for_update=True)
                job.title = "Bathroom"
                writer.put("jobs", job)
            assert stale.get("jobs", "job_1", for_update=True).title == "Bathroom"

    def test_waiter_sees_holder_writes(self, store: InMemoryStore) -> None:
        store = InMemoryStore(lock_timeout_seconds=5.0)
        with store.transaction() as uow:
            uow.put("jobs", _job())
        locked = threading.Event()
        seen = []

        def holder() -> None:
            with store.transaction() as uow:
                job = uow.get("jobs", "job_1", for_update=True)
                locked.set()
                time.sleep(0.1)
                job.title = "Updated by holder"
                uow.put("jobs", job)

        t = threading.Thread(target=holder)
        t.start()
        locked.wait()
        with store.transaction() as uow:
            seen.append(uow.get("jobs", "job_1", for_update=True).title)
        t.join()
        assert seen == ["Updated by holder"]


class TestSnapshotSupport:
    def test_export_and_load(self, store: InMemoryStore) -> None:
        with store.transaction() as uow:
            uow.put("jobs", _job())
        tables = store.export_tables()
        other = InMemoryStore()
        other.load_tables(tables)
        assert other.get("jobs", "job_1").title == "Fit kitchen"
        assert other.count("accesses") == 0
