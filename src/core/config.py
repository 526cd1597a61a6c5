"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import time


@dataclass(frozen=True)
class PollerConfig:
    """Ledger polling settings."""

    interval_seconds: float = 30.0
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    heartbeat_every: int = 10


@dataclass(frozen=True)
class SchedulerConfig:
    """Deadline scheduler timing settings (times are local wall-clock)."""

    daily_check_time: time = time(9, 0)
    fallback_interval_hours: float = 6.0
    initial_delay_seconds: float = 5.0
    # Monday is 0, Sunday is 6.
    weekly_reset_weekday: int = 6
    weekly_reset_time: time = time(0, 0)
