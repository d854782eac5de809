"""Reminder windows shared by final-price and commission reminders.

A deadline is reminded at each configured threshold (hours before the
deadline). For a given number of hours remaining the active threshold is
the tightest one the remaining time falls under; a reminder is sent only
if no reminder of the same kind for the same record was created within
the last `threshold` hours.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from jobledger.models.notification import Notification, NotificationKind
from jobledger.persistence.store import UnitOfWork


def hours_remaining(deadline: datetime, now: datetime) -> int:
    """Whole hours until the deadline, rounded up."""
    return math.ceil((deadline - now).total_seconds() / 3600)


def active_threshold(remaining: int, thresholds: list[int]) -> Optional[int]:
    """Tightest threshold with remaining <= threshold, or None."""
    if remaining <= 0:
        return None
    eligible = [t for t in thresholds if remaining <= t]
    return min(eligible) if eligible else None


def recently_reminded(
    uow: UnitOfWork,
    kind: NotificationKind,
    match: Callable[[Notification], bool],
    threshold_hours: int,
    now: datetime,
) -> bool:
    since = now - timedelta(hours=threshold_hours)
    return bool(uow.find(
        "notifications",
        lambda n: n.kind == kind and n.created_at >= since and match(n),
    ))
