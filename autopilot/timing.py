"""
Centralized timing utilities for deadlines, elapsed durations and log timestamps.

- Uses the monotonic clock for waits and durations (not affected by system clock changes)
- Exposes process uptime and UTC timestamp helpers for logging
"""
from __future__ import annotations

import time
from datetime import datetime, timezone

_PROCESS_START_MONOTONIC = time.monotonic()
_PROCESS_START_WALL = time.time()


def monotonic_ms() -> float:
    """Current monotonic time in milliseconds, the unit every wait budget is expressed in."""
    return time.monotonic() * 1000.0


def uptime_seconds() -> float:
    """Seconds since process start based on monotonic clock."""
    return time.monotonic() - _PROCESS_START_MONOTONIC


def now_utc_iso(ms: bool = True) -> str:
    """ISO-8601 UTC timestamp string suitable for logs (e.g., 2026-10-19T12:34:56.789Z)."""
    dt = datetime.now(timezone.utc)
    if ms:
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return dt.isoformat().replace("+00:00", "Z")


def process_start_utc_iso() -> str:
    """UTC ISO for process start time (approx; uses wall clock at import)."""
    return datetime.fromtimestamp(_PROCESS_START_WALL, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Stopwatch:
    """Elapsed-time tracker for one task or one run."""

    def __init__(self) -> None:
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start
