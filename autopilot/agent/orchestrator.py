"""
Task orchestrator: runs the queue of prompts against one BrowserSession, one unit at a time.

A unit is: wait idle -> select mode -> fill input -> submit -> wait for completion ->
(optionally) acquire the artifact. The whole unit is the retry boundary.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Union

from autopilot.agent.settings import PromptItem, TaskConfig
from autopilot.agent.views import LocalArtifact, PendingArtifact, RunSummary, TaskResult, TaskStatus
from autopilot.agent.waiting import wait_for_count_increase, wait_for_stable, wait_until, wait_until_idle
from autopilot.artifacts.service import ArtifactAcquirer
from autopilot.browser.session import BrowserSession
from autopilot.browser.types import Page
from autopilot.controller.service import Controller
from autopilot.exceptions import (
    ApplicationError,
    AutopilotError,
    NotLoggedInError,
    WaitTimeoutError,
    is_disconnect_error,
)
from autopilot.logging_config import RESULT_LEVEL
from autopilot.timing import Stopwatch, monotonic_ms

logger = logging.getLogger(__name__)

Completion = Callable[[Page, int, float], Awaitable[Union[str, PendingArtifact]]]

# a failed precondition will fail every following task too
QUEUE_ABORTING_ERRORS = (NotLoggedInError,)


@dataclass
class UnitOutcome:
    value: Optional[str] = None
    artifact: Optional[LocalArtifact] = None


class TaskOrchestrator:
    """Drives prompts through the site profile's UI with retry and reconnect.

    ``completion`` replaces the profile's completion strategy; it receives the page, the
    response/completion count recorded before submitting and the absolute deadline
    (monotonic ms), and returns the final text or a PendingArtifact.
    """

    def __init__(
        self,
        session: BrowserSession,
        config: TaskConfig,
        controller: Optional[Controller] = None,
        acquirer: Optional[ArtifactAcquirer] = None,
        completion: Optional[Completion] = None,
    ):
        self.session = session
        self.config = config
        self.profile = config.profile
        self.controller = controller or Controller(self.profile, config)
        self.acquirer = acquirer or ArtifactAcquirer(session, self.profile, config)
        if completion is not None:
            self.completion = completion
        elif self.profile.completion_kind == "element":
            self.completion = self.complete_element
        else:
            self.completion = self.complete_text
        self.summary: Optional[RunSummary] = None
        self._prepared = False

    # --- working context ---

    async def prepare(self, page: Page) -> None:
        """Open the working context on ``page`` and make every later reconnect re-verify it."""
        self.session.on_reconnect = self._restore_after_reconnect
        await self.controller.open_workspace(page)
        self._prepared = True
        logger.info(f"🚀 Working context ready for profile {self.profile.name!r}")

    async def _restore_after_reconnect(self, session: BrowserSession) -> None:
        logger.info("🔁 Re-verifying login and working context after reconnect")
        await self.controller.open_workspace(session.agent_current_page)

    # --- one unit ---

    def _count_before(self, page: Page) -> Awaitable[int]:
        if self.profile.completion_kind == "element":
            return self.controller.completion_count(page)
        return self.controller.response_count(page)

    def _capture(self):
        if self.config.download and self.profile.capture_url_patterns:
            return self.acquirer.capture()
        return nullcontext(None)

    async def execute_unit(self, page: Page, item: PromptItem) -> UnitOutcome:
        cfg = self.config

        await wait_until_idle(
            lambda: self.controller.is_busy(page),
            timeout_ms=cfg.wait_timeout_ms,
            interval_ms=cfg.poll_interval_ms,
            label="idle before sending",
        )
        if not cfg.skip_mode_switch:
            await self.controller.select_mode(page, cfg.mode_for(item))

        before = await self._count_before(page)
        logger.debug(f"Task {item.index}: count before submit = {before}")
        await self.controller.fill_input(page, item.text)

        async with self._capture() as capture:
            await self.controller.submit(page)
            outcome = await self.completion(page, before, monotonic_ms() + cfg.wait_timeout_ms)
            if not isinstance(outcome, PendingArtifact):
                return UnitOutcome(value=outcome)
            if not cfg.download:
                return UnitOutcome(value=outcome.reference or "(Completed: download disabled)")
            artifact = await self.acquirer.acquire(outcome, cfg.output_path_for(item), capture=capture)
            return UnitOutcome(value=str(artifact.path), artifact=artifact)

    # --- completion strategies ---

    def _remaining(self, deadline: float) -> float:
        return max(deadline - monotonic_ms(), 0.0)

    async def complete_text(self, page: Page, before: int, deadline: float) -> str:
        """Chat-style completion: a new response appears, then its text stops changing while idle."""
        cfg = self.config

        async def _response_count() -> int:
            await self.controller.check_error(page)
            return await self.controller.response_count(page)

        async def _in_progress() -> bool:
            await self.controller.check_error(page)
            return await self.controller.is_busy(page)

        await wait_for_count_increase(
            _response_count, before, timeout_ms=self._remaining(deadline), interval_ms=cfg.poll_interval_ms, label="response count increase"
        )
        return await wait_for_stable(
            lambda: self.controller.read_last_response(page),
            _in_progress,
            timeout_ms=self._remaining(deadline),
            stable_window_ms=cfg.stable_window_ms,
            interval_ms=cfg.poll_interval_ms,
            label="response to stabilize",
        )

    async def complete_element(self, page: Page, before: int, deadline: float) -> PendingArtifact:
        """Media-style completion: one more completion element is visible. Success is checked before errors."""

        async def _generated() -> Optional[PendingArtifact]:
            if await self.controller.completion_count(page) > before:
                element = await self.controller.find_latest_completion(page)
                if element is not None:
                    return PendingArtifact(kind="element", element=element)
            await self.controller.check_error(page)
            return None

        return await wait_until(
            _generated, timeout_ms=self._remaining(deadline), interval_ms=self.config.poll_interval_ms, label="generation to complete"
        )

    # --- retry policy ---

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, ApplicationError) or is_disconnect_error(error):
            return True
        if isinstance(error, WaitTimeoutError):
            return self.config.retry_on_timeout
        return False

    async def run_task(self, item: PromptItem) -> TaskResult:
        """Run one unit with up to ``max_retries`` attempts, restoring the working context before each retry."""
        cfg = self.config
        watch = Stopwatch()
        if item.is_empty:
            logger.info(f"⏭️ Task {item.index}: empty prompt, skipping")
            return TaskResult(index=item.index, status=TaskStatus.SKIPPED, value="(Skipped: empty prompt)")
        self.session.on_reconnect = self._restore_after_reconnect

        last_error: Optional[BaseException] = None
        for attempt in range(1, cfg.max_retries + 1):
            if attempt > 1:
                logger.info(f"🔁 Task {item.index}: attempt {attempt}/{cfg.max_retries} in {cfg.retry_delay_ms / 1000:.1f}s")
                await asyncio.sleep(cfg.retry_delay_ms / 1000)

            async def _attempt(page: Page, restore: bool = attempt > 1) -> UnitOutcome:
                if not self._prepared:
                    await self.prepare(page)
                elif restore:
                    await self.controller.restore_context(page)
                return await self.execute_unit(page, item)

            try:
                outcome = await self.session.with_retry(
                    _attempt, max_attempts=cfg.reconnect_attempts, label=f"task {item.index}"
                )
            except Exception as e:
                if self.is_retryable(e):
                    last_error = e
                    logger.warning(f"⚠️ Task {item.index}: attempt {attempt}/{cfg.max_retries} failed: {type(e).__name__}: {e}")
                    continue
                if isinstance(e, AutopilotError):
                    logger.error(f"❌ Task {item.index}: {type(e).__name__}: {e}")
                    return TaskResult.from_error(item.index, e, attempt, watch.elapsed_seconds)
                raise

            logger.info(f"✅ Task {item.index}: done in {watch.elapsed_seconds:.1f}s after {attempt} attempt(s)")
            return TaskResult(
                index=item.index,
                status=TaskStatus.SUCCESS,
                attempts=attempt,
                elapsed_seconds=round(watch.elapsed_seconds, 3),
                value=outcome.value,
                artifact=outcome.artifact,
            )

        assert last_error is not None
        logger.error(f"❌ Task {item.index}: giving up after {cfg.max_retries} attempts: {last_error}")
        return TaskResult.from_error(item.index, last_error, cfg.max_retries, watch.elapsed_seconds)

    async def run_queue(self, items: Optional[Iterable[PromptItem]] = None) -> RunSummary:
        """Process items strictly in order with a settle delay in between."""
        queue = list(self.config.prompts if items is None else items)
        watch = Stopwatch()
        self.summary = RunSummary(total=len(queue))
        for position, item in enumerate(queue):
            if position:
                await asyncio.sleep(self.config.inter_task_delay_ms / 1000)
            result = await self.run_task(item)
            self.summary.results.append(result)
            self.summary.elapsed_seconds = watch.elapsed_seconds
            self.summary.reconnects = self.session.reconnect_count
            if result.error_type in {e.__name__ for e in QUEUE_ABORTING_ERRORS}:
                logger.error(f"🛑 Stopping queue after task {item.index}: {result.error}")
                break

        self.summary.elapsed_seconds = watch.elapsed_seconds
        self.summary.reconnects = self.session.reconnect_count
        ok = sum(1 for r in self.summary.results if r.ok)
        logger.log(RESULT_LEVEL, f"📊 {ok}/{len(queue)} tasks succeeded in {watch.elapsed_seconds:.1f}s")
        return self.summary
