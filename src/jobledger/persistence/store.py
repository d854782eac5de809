"""Transactional store — units of work, row locks, unique indexes.

Every logical operation runs inside exactly one unit of work:

    with store.transaction() as uow:
        job = uow.require("jobs", job_id, for_update=True)
        ...
        uow.put("jobs", job)
        uow.record_event(EventKind.JOB_TRANSITION, actor, {...})
        uow.after_commit(lambda: outbox.enqueue(...))

Rows read through a unit of work are private copies. Mutations become
visible to other units of work only when the block exits normally; any
exception rolls back every staged write and every staged event.

for_update=True takes an exclusive per-row lock held until commit or
rollback, then re-reads the committed row, so a check-then-write on a
locked row never acts on stale state. Lock order across the codebase is
job row first, then contractor account or commission rows.

Commit runs under a store-wide mutex: unique indexes are checked against
the merged committed-plus-staged view and staged rows are copied, then the
staged events are appended to the audit log as one batch, and only then
are the rows swapped in. A failed log write leaves both untouched.
After-commit callbacks run last, outside every lock; a failing callback is
logged and never reverses the commit.
"""

from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional, Protocol, runtime_checkable

import structlog

from jobledger.errors import LockTimeoutError, NotFoundError, UniqueConstraintError
from jobledger.persistence.event_log import EventKind, EventLog, EventRecord

logger = structlog.get_logger(__name__)


PRIMARY_KEYS: dict[str, str] = {
    "jobs": "job_id",
    "accesses": "access_id",
    "accounts": "contractor_id",
    "subscriptions": "contractor_id",
    "credit_transactions": "transaction_id",
    "commissions": "commission_id",
    "disputes": "dispute_id",
    "dispute_responses": "response_id",
    "notifications": "notification_id",
    "webhook_receipts": "receipt_id",
    "scheduler_state": "pass_name",
}

# Rows whose indexed value contains None are not indexed.
UNIQUE_INDEXES: dict[str, tuple[tuple[str, ...], ...]] = {
    "accesses": (("job_id", "contractor_id"), ("payment_reference",)),
    "commissions": (("job_id",), ("external_payment_ref",)),
}

_LABELS: dict[str, str] = {
    "jobs": "job",
    "accesses": "job access",
    "accounts": "contractor",
    "subscriptions": "subscription",
    "credit_transactions": "credit transaction",
    "commissions": "commission payment",
    "disputes": "dispute",
    "dispute_responses": "dispute response",
    "notifications": "notification",
    "webhook_receipts": "webhook receipt",
    "scheduler_state": "scheduler pass",
}


@runtime_checkable
class Store(Protocol):
    """Persistence port used by every engine component."""

    def transaction(self) -> Any:
        """Context manager yielding a UnitOfWork."""
        ...

    def get(self, table: str, key: str) -> Optional[Any]:
        ...

    def find(self, table: str, predicate: Optional[Callable[[Any], bool]] = None) -> list[Any]:
        ...


class UnitOfWork:
    """A single transaction against an InMemoryStore."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self._identity: dict[tuple[str, str], Any] = {}
        self._dirty: set[tuple[str, str]] = set()
        self._held: list[tuple[str, str]] = []
        self._events: list[tuple[EventKind, str, dict[str, Any], Optional[datetime]]] = []
        self._after_commit: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, table: str, key: str, for_update: bool = False) -> Optional[Any]:
        """Return this unit of work's copy of a row, or None."""
        ident = (table, key)
        if for_update and ident not in self._held:
            self._store._acquire(ident)
            self._held.append(ident)
            if ident not in self._dirty:
                self._identity[ident] = self._store._read_committed(table, key)
        elif ident not in self._identity:
            self._identity[ident] = self._store._read_committed(table, key)
        return self._identity[ident]

    def require(self, table: str, key: str, for_update: bool = False) -> Any:
        """Like get(), but raises NotFoundError for an unknown id."""
        row = self.get(table, key, for_update=for_update)
        if row is None:
            raise NotFoundError(f"Unknown {_LABELS.get(table, table)}: {key}")
        return row

    def find(self, table: str, predicate: Optional[Callable[[Any], bool]] = None) -> list[Any]:
        """Rows of a table as this unit of work sees them, staged writes included."""
        rows: dict[str, Any] = {}
        for key, row in self._store._committed_rows(table).items():
            ident = (table, key)
            rows[key] = self._identity[ident] if ident in self._identity else row
        for (t, key), row in self._identity.items():
            if t == table:
                rows[key] = row
        return [r for r in rows.values() if r is not None and (predicate is None or predicate(r))]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, table: str, row: Any) -> None:
        """Stage an insert or update."""
        key = getattr(row, PRIMARY_KEYS[table])
        ident = (table, key)
        self._identity[ident] = row
        self._dirty.add(ident)

    def record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        """Stage an audit event; appended to the log only on commit."""
        self._events.append((kind, actor_id, payload, now))

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Register work to run once the transaction has committed."""
        self._after_commit.append(callback)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        try:
            writes = {ident: self._identity[ident] for ident in self._dirty}
            records = [
                EventRecord.create(
                    event_id=f"evt_{uuid.uuid4().hex[:12]}",
                    event_kind=kind,
                    actor_id=actor_id,
                    payload=payload,
                    timestamp_utc=now,
                )
                for kind, actor_id, payload, now in self._events
            ]
            self._store._commit(writes, records)
        finally:
            self._release()

    def _rollback(self) -> None:
        self._identity.clear()
        self._dirty.clear()
        self._events.clear()
        self._after_commit.clear()
        self._release()

    def _release(self) -> None:
        while self._held:
            self._store._release(self._held.pop())

    def _run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                callback()
            except Exception:
                logger.exception("After-commit hook failed")


class InMemoryStore:
    """Thread-safe in-memory implementation of the Store port."""

    def __init__(
        self,
        event_log: Optional[EventLog] = None,
        lock_timeout_seconds: float = 5.0,
    ) -> None:
        self.event_log = event_log if event_log is not None else EventLog()
        self._lock_timeout = lock_timeout_seconds
        self._tables: dict[str, dict[str, Any]] = {t: {} for t in PRIMARY_KEYS}
        self._mutex = threading.RLock()
        self._row_locks: dict[tuple[str, str], threading.Lock] = {}
        self._row_locks_guard = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        uow = UnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow._rollback()
            raise
        uow._commit()
        uow._run_after_commit()

    # ------------------------------------------------------------------
    # Committed reads (outside a unit of work)
    # ------------------------------------------------------------------

    def get(self, table: str, key: str) -> Optional[Any]:
        return self._read_committed(table, key)

    def find(self, table: str, predicate: Optional[Callable[[Any], bool]] = None) -> list[Any]:
        rows = self._committed_rows(table).values()
        return [r for r in rows if predicate is None or predicate(r)]

    def count(self, table: str) -> int:
        with self._mutex:
            return len(self._tables[table])

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def export_tables(self) -> dict[str, dict[str, Any]]:
        with self._mutex:
            return copy.deepcopy(self._tables)

    def load_tables(self, tables: dict[str, dict[str, Any]]) -> None:
        with self._mutex:
            for table in PRIMARY_KEYS:
                self._tables[table] = copy.deepcopy(tables.get(table, {}))

    # ------------------------------------------------------------------
    # Internals used by UnitOfWork
    # ------------------------------------------------------------------

    def _read_committed(self, table: str, key: str) -> Optional[Any]:
        with self._mutex:
            return copy.deepcopy(self._tables[table].get(key))

    def _committed_rows(self, table: str) -> dict[str, Any]:
        with self._mutex:
            return copy.deepcopy(self._tables[table])

    def _acquire(self, ident: tuple[str, str]) -> None:
        with self._row_locks_guard:
            lock = self._row_locks.setdefault(ident, threading.Lock())
        if not lock.acquire(timeout=self._lock_timeout):
            logger.warning("Row lock timeout", table=ident[0], key=ident[1])
            raise LockTimeoutError(
                f"Timed out waiting for lock on {_LABELS.get(ident[0], ident[0])} {ident[1]}"
            )

    def _release(self, ident: tuple[str, str]) -> None:
        with self._row_locks_guard:
            lock = self._row_locks.get(ident)
        if lock is not None:
            lock.release()

    def _commit(
        self,
        writes: dict[tuple[str, str], Any],
        records: list[EventRecord],
    ) -> None:
        with self._mutex:
            self._check_unique(writes)
            staged = {ident: copy.deepcopy(row) for ident, row in writes.items()}
            # Last step that can fail; the swap below cannot.
            self.event_log.append_all(records)
            for (table, key), row in staged.items():
                self._tables[table][key] = row

    def _check_unique(self, writes: dict[tuple[str, str], Any]) -> None:
        for table, indexes in UNIQUE_INDEXES.items():
            staged = {key: row for (t, key), row in writes.items() if t == table}
            if not staged:
                continue
            merged = dict(self._tables[table])
            merged.update(staged)
            for fields in indexes:
                seen: dict[tuple[Any, ...], str] = {}
                for key, row in merged.items():
                    value = tuple(getattr(row, f) for f in fields)
                    if any(v is None for v in value):
                        continue
                    if value in seen:
                        raise UniqueConstraintError(
                            f"Unique index {table}({', '.join(fields)}) violated "
                            f"by {value!r}"
                        )
                    seen[value] = key
