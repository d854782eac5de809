"""Tests for the append-only event log — proves hashing and fail-closed recovery."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from jobledger.errors import PersistenceError
from jobledger.persistence.event_log import EventKind, EventLog, EventRecord


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _record(event_id: str = "evt_1", job_id: str = "job_1") -> EventRecord:
    return EventRecord.create(
        event_id=event_id,
        event_kind=EventKind.JOB_CREATED,
        actor_id="customer_1",
        payload={"job_id": job_id},
        timestamp_utc=_now(),
    )


class TestEventLog:
    def test_hash_is_deterministic(self) -> None:
        assert _record().event_hash == _record().event_hash
        assert _record().event_hash.startswith("sha256:")

    def test_append_and_filter(self) -> None:
        log = EventLog()
        log.append(_record("evt_1", "job_1"))
        log.append(_record("evt_2", "job_2"))
        assert log.count == 2
        assert [e.event_id for e in log.events_for("job_id", "job_2")] == ["evt_2"]
        assert len(log.events(EventKind.JOB_CREATED)) == 2
        assert log.events(EventKind.DISPUTE_OPENED) == []
        assert log.last_event.event_id == "evt_2"

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        log.append(_record("evt_1"))
        with pytest.raises(PersistenceError, match="Duplicate"):
            log.append(_record("evt_1"))

    def test_batch_with_duplicate_leaves_log_unchanged(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(_record("evt_1"))
        with pytest.raises(PersistenceError):
            log.append_all([_record("evt_2"), _record("evt_1")])
        assert log.count == 1
        assert len(path.read_text().splitlines()) == 1

    def test_failed_file_write_leaves_memory_unchanged(self, tmp_path: Path, monkeypatch) -> None:
        log = EventLog(storage_path=tmp_path / "events.jsonl")

        def disk_full(events):
            raise OSError("disk full")

        monkeypatch.setattr(log, "_append_to_file", disk_full)
        with pytest.raises(OSError):
            log.append_all([_record("evt_1"), _record("evt_2")])
        assert log.count == 0

    def test_file_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(_record("evt_1"))
        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 1
        assert reloaded.last_event.event_hash == log.last_event.event_hash

    def test_tampered_file_fails_closed(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_record("evt_1"))
        data = json.loads(path.read_text(encoding="utf-8"))
        data["payload"]["job_id"] = "job_tampered"
        path.write_text(json.dumps(data) + "\n", encoding="utf-8")
        with pytest.raises(PersistenceError, match="Integrity check failed"):
            EventLog(storage_path=path)
