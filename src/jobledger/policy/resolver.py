"""Policy resolver — loads platform_policy.json and exposes every runtime
decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud
at construction time, before any request is served.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from jobledger.errors import ConfigurationError


@dataclass(frozen=True)
class SchedulerIntervals:
    """Cadence of each scheduler pass."""
    auto_confirm: timedelta
    final_price_reminders: timedelta
    commission_checks: timedelta
    weekly_allocations: timedelta
    kyc_deadlines: timedelta


class PolicyResolver:
    """Loads and resolves platform policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        rate = resolver.commission_rate()
        window = resolver.final_price_timeout()
    """

    _REQUIRED: tuple[tuple[str, ...], ...] = (
        ("version",),
        ("commission", "rate"),
        ("commission", "due_days"),
        ("commission", "reminder_hours"),
        ("final_price", "timeout_hours"),
        ("final_price", "reminder_hours"),
        ("credits", "welcome_credits"),
        ("credits", "weekly_reset_days"),
        ("kyc", "deadline_days"),
        ("scheduler", "auto_confirm_interval_minutes"),
        ("scheduler", "final_price_reminder_interval_minutes"),
        ("scheduler", "commission_check_interval_minutes"),
        ("scheduler", "weekly_allocation_interval_minutes"),
        ("scheduler", "kyc_deadline_interval_minutes"),
        ("notifications", "max_attempts"),
        ("persistence", "lock_timeout_seconds"),
    )

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "platform_policy.json"))

    def _validate(self) -> None:
        for path in self._REQUIRED:
            node: Any = self._policy
            for key in path:
                if not isinstance(node, dict) or key not in node:
                    raise ConfigurationError(
                        f"platform_policy.json missing {'.'.join(path)}"
                    )
                node = node[key]

        # Parses and range-checks the rate as a side effect
        self.commission_rate()

        for path in (("commission", "reminder_hours"), ("final_price", "reminder_hours")):
            hours = self._policy[path[0]][path[1]]
            if not hours or any(h <= 0 for h in hours):
                raise ConfigurationError(
                    f"{'.'.join(path)} must be a non-empty list of positive hours"
                )

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    def commission_rate(self) -> Decimal:
        """Commission as a fraction of the final job amount (0.05 = 5%)."""
        raw = self._policy["commission"]["rate"]
        try:
            rate = Decimal(str(raw))
        except InvalidOperation as e:
            raise ConfigurationError(f"Invalid commission rate: {raw!r}") from e
        if rate < Decimal("0") or rate > Decimal("1"):
            raise ConfigurationError(f"Commission rate out of range [0, 1]: {rate}")
        return rate

    def commission_due(self) -> timedelta:
        return timedelta(days=self._policy["commission"]["due_days"])

    def commission_reminder_hours(self) -> list[int]:
        """Reminder thresholds before the commission due date, descending."""
        return sorted(self._policy["commission"]["reminder_hours"], reverse=True)

    # ------------------------------------------------------------------
    # Final price confirmation
    # ------------------------------------------------------------------

    def final_price_timeout(self) -> timedelta:
        return timedelta(hours=self._policy["final_price"]["timeout_hours"])

    def final_price_reminder_hours(self) -> list[int]:
        """Reminder thresholds before auto-confirmation, descending."""
        return sorted(self._policy["final_price"]["reminder_hours"], reverse=True)

    # ------------------------------------------------------------------
    # Credits and contractors
    # ------------------------------------------------------------------

    def welcome_credits(self) -> int:
        return int(self._policy["credits"]["welcome_credits"])

    def weekly_reset_period(self) -> timedelta:
        return timedelta(days=self._policy["credits"]["weekly_reset_days"])

    def kyc_deadline(self) -> timedelta:
        return timedelta(days=self._policy["kyc"]["deadline_days"])

    # ------------------------------------------------------------------
    # Scheduler, notifications, persistence
    # ------------------------------------------------------------------

    def scheduler_intervals(self) -> SchedulerIntervals:
        s = self._policy["scheduler"]
        return SchedulerIntervals(
            auto_confirm=timedelta(minutes=s["auto_confirm_interval_minutes"]),
            final_price_reminders=timedelta(
                minutes=s["final_price_reminder_interval_minutes"]
            ),
            commission_checks=timedelta(minutes=s["commission_check_interval_minutes"]),
            weekly_allocations=timedelta(minutes=s["weekly_allocation_interval_minutes"]),
            kyc_deadlines=timedelta(minutes=s["kyc_deadline_interval_minutes"]),
        )

    def notification_max_attempts(self) -> int:
        return int(self._policy["notifications"]["max_attempts"])

    def lock_timeout_seconds(self) -> float:
        return float(self._policy["persistence"]["lock_timeout_seconds"])


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
