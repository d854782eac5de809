"""jobledger CLI — operator and cron entry points.

Usage:
    python -m jobledger.cli status
    python -m jobledger.cli tick
    python -m jobledger.cli run-auto-confirm --workers 4
    python -m jobledger.cli run-reminders
    python -m jobledger.cli run-commission-checks
    python -m jobledger.cli run-weekly-allocations
    python -m jobledger.cli run-kyc-deadlines
    python -m jobledger.cli register-contractor --id contractor_1
    python -m jobledger.cli approve-contractor --id contractor_1 --admin admin_1 [--bypass-kyc]

State is loaded from and saved to a JSON snapshot in the data directory;
audit events are appended to events.jsonl beside it. Each command holds an
exclusive lock on state.lock from load to save, so overlapping cron runs
against one data directory execute one after the other.
"""

from __future__ import annotations

import argparse
import fcntl
import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import structlog

from jobledger.errors import PlatformError
from jobledger.logging_config import configure_logging
from jobledger.persistence.event_log import EventLog
from jobledger.persistence.state_store import StateStore, to_primitive
from jobledger.persistence.store import InMemoryStore
from jobledger.policy.resolver import PolicyResolver
from jobledger.service import PlatformService, ServiceResult

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(config_dir: Path, data_dir: Path) -> tuple[PlatformService, StateStore]:
    """Create a PlatformService backed by the data directory."""
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(config_dir)
    store = InMemoryStore(
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        lock_timeout_seconds=resolver.lock_timeout_seconds(),
    )
    snapshots = StateStore(storage_path=data_dir / "state.json")
    snapshots.load_into(store)
    return PlatformService(resolver, store=store), snapshots


@contextmanager
def _state_lock(data_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on the data directory for a load-run-save cycle."""
    data_dir.mkdir(parents=True, exist_ok=True)
    with open(data_dir / "state.lock", "a") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _print(data: Any) -> None:
    print(json.dumps(to_primitive(data), indent=2, sort_keys=True))


def _with_service(
    args: argparse.Namespace,
    action: Callable[[PlatformService, Optional[datetime]], Any],
) -> int:
    now = _parse_now(args.now)
    with _state_lock(args.data_dir):
        service, snapshots = _make_service(args.config, args.data_dir)
        result = action(service, now)
        service.outbox.flush()
        snapshots.save_store(service.store, now)
    if isinstance(result, ServiceResult):
        if not result.success:
            print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
            return 1
        _print(result.data)
        return 0
    _print(result)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    return _with_service(args, lambda service, now: service.status())


def cmd_tick(args: argparse.Namespace) -> int:
    return _with_service(args, lambda service, now: service.run_scheduler(now))


def cmd_run_auto_confirm(args: argparse.Namespace) -> int:
    return _with_service(
        args,
        lambda service, now: service.scheduler.run_auto_confirmations(now, max_workers=args.workers),
    )


def cmd_run_reminders(args: argparse.Namespace) -> int:
    return _with_service(
        args, lambda service, now: service.scheduler.run_final_price_reminders(now)
    )


def cmd_run_commission_checks(args: argparse.Namespace) -> int:
    return _with_service(args, lambda service, now: service.scheduler.run_commission_checks(now))


def cmd_run_weekly_allocations(args: argparse.Namespace) -> int:
    return _with_service(args, lambda service, now: service.scheduler.run_weekly_allocations(now))


def cmd_run_kyc_deadlines(args: argparse.Namespace) -> int:
    return _with_service(args, lambda service, now: service.scheduler.run_kyc_deadlines(now))


def cmd_register_contractor(args: argparse.Namespace) -> int:
    return _with_service(args, lambda service, now: service.register_contractor(args.id, now))


def cmd_approve_contractor(args: argparse.Namespace) -> int:
    return _with_service(
        args,
        lambda service, now: service.approve_contractor(
            args.id, args.admin, bypass_kyc=args.bypass_kyc, now=now
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobledger",
        description="jobledger — job lifecycle and settlement engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DEFAULT_DATA,
        help="Directory holding state.json and events.jsonl (default: data/)",
    )
    parser.add_argument("--now", help="ISO-8601 timestamp to run as (default: current UTC time)")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show job, commission and dispute counts")
    sub.add_parser("tick", help="Run every scheduler pass whose interval has elapsed")

    p_auto = sub.add_parser("run-auto-confirm", help="Auto-confirm timed-out final prices")
    p_auto.add_argument("--workers", type=int, default=1, help="Parallel workers (default: 1)")

    sub.add_parser("run-reminders", help="Send final price confirmation reminders")
    sub.add_parser("run-commission-checks", help="Mark overdue commissions, send reminders")
    sub.add_parser("run-weekly-allocations", help="Top up subscribed contractors")
    sub.add_parser("run-kyc-deadlines", help="Pause contractors past their KYC deadline")

    p_reg = sub.add_parser("register-contractor", help="Register a contractor")
    p_reg.add_argument("--id", required=True, help="Contractor ID")

    p_app = sub.add_parser("approve-contractor", help="Approve a registered contractor")
    p_app.add_argument("--id", required=True, help="Contractor ID")
    p_app.add_argument("--admin", required=True, help="Approving administrator ID")
    p_app.add_argument("--bypass-kyc", action="store_true", help="Approve without a KYC deadline")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(json_output=False, level=args.log_level)

    commands = {
        "status": cmd_status,
        "tick": cmd_tick,
        "run-auto-confirm": cmd_run_auto_confirm,
        "run-reminders": cmd_run_reminders,
        "run-commission-checks": cmd_run_commission_checks,
        "run-weekly-allocations": cmd_run_weekly_allocations,
        "run-kyc-deadlines": cmd_run_kyc_deadlines,
        "register-contractor": cmd_register_contractor,
        "approve-contractor": cmd_approve_contractor,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except PlatformError as e:
        logger.error("Command failed", command=args.command, error_code=e.code, error=e.message)
        print(f"Failed: {e.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
