"""Append-only event log — the audit trail of every committed state change.

Each unit of work records the events it produced; the store appends them
to this log only when the unit of work commits, so the log never holds an
event whose effect was rolled back. Events are immutable once written.

Every record carries a SHA-256 hash of its canonical JSON form. When the
log is backed by a JSONL file, records are re-hashed on load and a
mismatch fails closed.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from jobledger.errors import PersistenceError


class EventKind(str, enum.Enum):
    """Classification of audit events."""
    # Jobs
    JOB_CREATED = "job_created"
    JOB_TRANSITION = "job_transition"
    JOB_ASSIGNED = "job_assigned"
    FINAL_PRICE_PROPOSED = "final_price_proposed"
    FINAL_PRICE_CONFIRMED = "final_price_confirmed"
    FINAL_PRICE_REJECTED = "final_price_rejected"
    JOB_VALUE_ADJUSTED = "job_value_adjusted"
    JOB_FLAGGED = "job_flagged"
    JOB_CAPACITY_UPDATED = "job_capacity_updated"
    ACCESS_GRANTED = "access_granted"
    # Ledger
    CREDITS_DEBITED = "credits_debited"
    CREDITS_CREDITED = "credits_credited"
    WEEKLY_ALLOCATION = "weekly_allocation"
    # Commission
    COMMISSION_CREATED = "commission_created"
    COMMISSION_OVERDUE = "commission_overdue"
    COMMISSION_PAID = "commission_paid"
    COMMISSION_WAIVED = "commission_waived"
    COMMISSION_ADJUSTED = "commission_adjusted"
    # Disputes
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESPONSE = "dispute_response"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_CLOSED = "dispute_closed"
    # Contractors
    CONTRACTOR_REGISTERED = "contractor_registered"
    CONTRACTOR_APPROVED = "contractor_approved"
    KYC_UPDATED = "kyc_updated"
    KYC_OVERDUE = "kyc_overdue"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    # Integration
    WEBHOOK_PROCESSED = "webhook_processed"
    REMINDER_SENT = "reminder_sent"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable audit event.

    Payload values must be JSON-serialisable; callers pass Decimals and
    datetimes as strings.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )


class EventLog:
    """Append-only event log with optional JSONL file persistence.

    Thread-safe: concurrent commits append under an internal lock.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event. Raises PersistenceError on a duplicate id."""
        self.append_all([event])

    def append_all(self, events: list[EventRecord]) -> None:
        """Append a batch of events, all or none.

        Ids are checked and the file is written before the in-memory log
        changes, so a failed batch leaves no trace in memory.
        """
        with self._lock:
            seen: set[str] = set()
            for event in events:
                if event.event_id in self._event_ids or event.event_id in seen:
                    raise PersistenceError(f"Duplicate event ID: {event.event_id}")
                seen.add(event.event_id)
            if self._storage_path and events:
                self._append_to_file(events)
            self._events.extend(events)
            self._event_ids.update(seen)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for(self, key: str, value: str) -> list[EventRecord]:
        """Return events whose payload carries key == value (e.g. job_id)."""
        return [e for e in self._events if e.payload.get(key) == value]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, events: list[EventRecord]) -> None:
        lines = []
        for event in events:
            record = {
                "event_id": event.event_id,
                "event_kind": event.event_kind.value,
                "timestamp_utc": event.timestamp_utc,
                "actor_id": event.actor_id,
                "payload": event.payload,
                "event_hash": event.event_hash,
            }
            lines.append(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write("".join(lines))

    def _load_from_file(self, path: Path) -> None:
        """Load events with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise PersistenceError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise PersistenceError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
