"""Scheduler bookkeeping — when each periodic pass last ran."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class PassRun:
    pass_name: str
    last_run_at: datetime
