"""
Polling primitives shared by every wait in autopilot.

All waits are fixed-cadence and bounded by an explicit, caller-supplied wall-clock budget.
Predicates may be plain callables or coroutine functions.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar, Union

from autopilot.exceptions import FatalSignal, TransientSessionError, WaitTimeoutError, is_disconnect_error
from autopilot.timing import monotonic_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

Probe = Callable[[], Union[T, Awaitable[T]]]

DEFAULT_INTERVAL_MS = 500


async def _call(probe: Probe[T]) -> T:
    result = probe()
    if inspect.isawaitable(result):
        return await result
    return result


async def wait_until(
    predicate: Probe[Any],
    *,
    timeout_ms: float,
    interval_ms: float = DEFAULT_INTERVAL_MS,
    label: str = "condition",
) -> Any:
    """Poll ``predicate`` until it returns a truthy value and return that value.

    Exceptions raised by the predicate count as "not yet", except ``FatalSignal`` subclasses
    (re-raised as-is) and disconnection errors (re-raised as ``TransientSessionError``).
    Raises ``WaitTimeoutError`` once ``timeout_ms`` has elapsed; the last sleep is capped by
    the remaining budget so the overshoot is at most one predicate evaluation.
    """
    deadline = monotonic_ms() + timeout_ms
    last_error: BaseException | None = None
    polls = 0
    while True:
        polls += 1
        try:
            result = await _call(predicate)
            if result:
                return result
        except FatalSignal:
            raise
        except Exception as e:
            if is_disconnect_error(e):
                raise TransientSessionError(f"{label}: {type(e).__name__}: {e}") from e
            last_error = e
            logger.debug(f"⏳ {label}: poll {polls} raised {type(e).__name__}: {e}")

        remaining = deadline - monotonic_ms()
        if remaining <= 0:
            logger.debug(f"⌛ {label}: gave up after {polls} polls ({int(timeout_ms)}ms)")
            raise WaitTimeoutError(label, timeout_ms, last_error)
        await asyncio.sleep(min(interval_ms, remaining) / 1000.0)


async def wait_until_idle(
    is_busy: Probe[bool],
    *,
    timeout_ms: float,
    interval_ms: float = DEFAULT_INTERVAL_MS,
    label: str = "idle",
) -> None:
    """Wait until ``is_busy`` reports False, e.g. a stop-generation button has gone away."""

    async def _idle() -> bool:
        return not await _call(is_busy)

    await wait_until(_idle, timeout_ms=timeout_ms, interval_ms=interval_ms, label=label)


async def wait_for_count_increase(
    read_count: Probe[int],
    before: int,
    *,
    timeout_ms: float,
    interval_ms: float = DEFAULT_INTERVAL_MS,
    label: str = "count increase",
) -> int:
    """Wait until ``read_count`` exceeds ``before`` and return the new count."""

    async def _increased() -> int | None:
        count = await _call(read_count)
        return count if count > before else None

    return await wait_until(_increased, timeout_ms=timeout_ms, interval_ms=interval_ms, label=label)


class _StabilityTracker:
    """Remembers the latest observed signal and when it last changed."""

    def __init__(self) -> None:
        self.value: str | None = None
        self.changed_at: float | None = None
        self.changes = 0

    def observe(self, current: str | None, now: float) -> None:
        if current is None:
            return
        if self.changed_at is None or current != self.value:
            self.value = current
            self.changed_at = now
            self.changes += 1

    def quiet_for(self, now: float) -> float:
        if self.changed_at is None:
            return 0.0
        return now - self.changed_at


async def wait_for_stable(
    read_signal: Probe[str | None],
    is_in_progress: Probe[bool],
    *,
    timeout_ms: float,
    stable_window_ms: float,
    interval_ms: float = DEFAULT_INTERVAL_MS,
    label: str = "signal to stabilize",
) -> str:
    """Wait for ``read_signal`` to stop changing for ``stable_window_ms`` while nothing is in progress.

    A ``None`` reading means "no signal yet" and never starts the dwell window. Success is
    declared only on a tick where ``is_in_progress`` returned False; a probe that raises is
    treated as busy for that tick. Returns the final stabilized value.
    """
    tracker = _StabilityTracker()

    async def _settled() -> bool:
        tracker.observe(await _call(read_signal), monotonic_ms())
        if tracker.changed_at is None:
            return False
        if await _call(is_in_progress):
            return False
        return tracker.quiet_for(monotonic_ms()) >= stable_window_ms

    await wait_until(_settled, timeout_ms=timeout_ms, interval_ms=interval_ms, label=label)
    logger.debug(f"🧊 {label}: stable after {tracker.changes} change(s), {len(tracker.value or '')} chars")
    return tracker.value or ""
