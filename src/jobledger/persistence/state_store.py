"""State store — JSON snapshot of an InMemoryStore.

Lets the CLI run scheduler passes against state that survives between
invocations. Every table is written as a list of records; Decimals are
stored as strings, datetimes as ISO-8601, enums by value. Loading rebuilds
the typed records from the dataclass field annotations.

This is a simple file-based store suitable for single-node deployment.
Production deployments would replace InMemoryStore with a database
backend while keeping the same Store interface.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import typing
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from jobledger.errors import PersistenceError
from jobledger.models.commission import CommissionPayment
from jobledger.models.dispute import Dispute, DisputeResponse
from jobledger.models.job import Job, JobAccess
from jobledger.models.ledger import ContractorAccount, CreditTransaction, Subscription
from jobledger.models.notification import Notification, WebhookReceipt
from jobledger.models.scheduler import PassRun
from jobledger.persistence.store import PRIMARY_KEYS, InMemoryStore

TABLE_TYPES: dict[str, type] = {
    "jobs": Job,
    "accesses": JobAccess,
    "accounts": ContractorAccount,
    "subscriptions": Subscription,
    "credit_transactions": CreditTransaction,
    "commissions": CommissionPayment,
    "disputes": Dispute,
    "dispute_responses": DisputeResponse,
    "notifications": Notification,
    "webhook_receipts": WebhookReceipt,
    "scheduler_state": PassRun,
}


class StateStore:
    """JSON file-based snapshot persistence.

    Usage:
        snapshots = StateStore(Path("data/jobledger_state.json"))
        snapshots.load_into(store)
        ...
        snapshots.save_store(store)
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._state: dict[str, Any] = {}
        if storage_path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                self._state = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt state file {self._path}: {e}") from e

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2, sort_keys=True, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Whole-store snapshot
    # ------------------------------------------------------------------

    def save_store(self, store: InMemoryStore, now: Optional[datetime] = None) -> None:
        """Serialize every table of the store."""
        tables = store.export_tables()
        self._state["tables"] = {
            table: [to_primitive(row) for row in rows.values()]
            for table, rows in tables.items()
        }
        self._state["saved_utc"] = (now or datetime.now(timezone.utc)).isoformat()
        self._save()

    def load_into(self, store: InMemoryStore) -> int:
        """Replace the store's tables with the snapshot. Returns row count."""
        tables: dict[str, dict[str, Any]] = {}
        count = 0
        for table, records in self._state.get("tables", {}).items():
            cls = TABLE_TYPES.get(table)
            if cls is None:
                raise PersistenceError(f"Unknown table in state file: {table}")
            key_field = PRIMARY_KEYS[table]
            rows = {}
            for data in records:
                row = _decode(cls, data)
                rows[getattr(row, key_field)] = row
            tables[table] = rows
            count += len(rows)
        store.load_tables(tables)
        return count

    @property
    def saved_utc(self) -> Optional[str]:
        return self._state.get("saved_utc")


# ----------------------------------------------------------------------
# Typed (de)serialisation
# ----------------------------------------------------------------------

def to_primitive(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_primitive(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [to_primitive(v) for v in value]
    if isinstance(value, dict):
        return {k: to_primitive(v) for k, v in value.items()}
    return value


def _decode(cls: type, data: dict[str, Any]) -> Any:
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data:
            kwargs[f.name] = _decode_value(hints[f.name], data[f.name])
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise PersistenceError(f"Cannot rebuild {cls.__name__}: {e}") from e


def _decode_value(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = typing.get_origin(tp)
    args = typing.get_args(tp)
    if origin is typing.Union:
        inner = [a for a in args if a is not type(None)]
        return _decode_value(inner[0], value)
    if origin is list:
        return [_decode_value(args[0], v) for v in value]
    if origin is tuple:
        return tuple(_decode_value(args[0], v) for v in value)
    if origin is dict:
        return dict(value)
    if isinstance(tp, type):
        if issubclass(tp, enum.Enum):
            return tp(value)
        if tp is Decimal:
            return Decimal(value)
        if tp is datetime:
            return datetime.fromisoformat(value)
    return value
