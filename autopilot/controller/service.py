import logging
from typing import Optional

from autopilot.agent.settings import TaskConfig
from autopilot.agent.waiting import wait_until
from autopilot.browser.selectors import (
    any_visible,
    count_matching,
    describe,
    find_last_visible,
    find_visible,
    last_text,
    wait_visible,
)
from autopilot.browser.types import Page
from autopilot.exceptions import ApplicationError, ConfigurationError, NotLoggedInError, WaitTimeoutError
from autopilot.profiles import SiteProfile

logger = logging.getLogger(__name__)

MODE_MENU_TIMEOUT_MS = 5_000
MODE_MENU_INTERVAL_MS = 200
SETTLE_MS = 300


class Controller:
    """UI steps for one site profile. Every method takes the page to act on, never caches it."""

    def __init__(self, profile: SiteProfile, config: TaskConfig):
        self.profile = profile
        self.config = config

    @property
    def step_timeout_ms(self) -> float:
        return self.config.step_timeout_ms

    @property
    def interval_ms(self) -> float:
        return self.config.poll_interval_ms

    # --- working context ---

    async def navigate(self, page: Page, url: str) -> None:
        logger.info(f"🔗 Navigating to {url}")
        await page.goto(url, wait_until="domcontentloaded", timeout=self.step_timeout_ms)

    def ensure_logged_in(self, page: Page) -> None:
        if self.profile.is_login_url(page.url):
            raise NotLoggedInError(page.url)

    async def open_workspace(self, page: Page, url: Optional[str] = None) -> None:
        """Navigate to the working context and make sure it is usable: logged in, popups gone, input ready."""
        await self.navigate(page, url or self.profile.restore_url(self.config.working_url))
        self.ensure_logged_in(page)
        await self.dismiss_popups(page)

        if self.profile.workspace_entry and not await any_visible(self.profile.ready, page):
            entry = await wait_visible(
                self.profile.workspace_entry,
                page,
                timeout_ms=self.step_timeout_ms,
                interval_ms=self.interval_ms,
                label="workspace entry",
            )
            logger.info("🆕 Opening a fresh workspace")
            await entry.click()

        if self.profile.ready:
            try:
                await wait_visible(
                    self.profile.ready, page, timeout_ms=self.step_timeout_ms, interval_ms=self.interval_ms, label="workspace ready"
                )
            except WaitTimeoutError:
                # a late redirect to the login page shows up as a missing input
                self.ensure_logged_in(page)
                raise
        await self.dismiss_popups(page)
        logger.debug(f"✅ Workspace ready on {page.url}")

    async def restore_context(self, page: Page) -> None:
        """Re-open the working context after a failed attempt; nothing from the failed UI state is reused.

        The configured URL wins, then the page's own URL (a project or conversation the user was in).
        """
        current = None if page.is_closed() else page.url
        await self.open_workspace(page, self.profile.restore_url(self.config.goto_url or current))

    async def dismiss_popups(self, page: Page) -> int:
        """Click every visible consent/notification close button once. Returns how many were closed."""
        closed = 0
        for selector in self.profile.dismiss:
            element = await find_visible([selector], page)
            if element is None:
                continue
            logger.debug(f"🧹 Dismissing popup {selector!r}")
            await element.click()
            await page.wait_for_timeout(SETTLE_MS)
            closed += 1
        return closed

    # --- mode ---

    async def select_mode(self, page: Page, mode: Optional[str]) -> bool:
        """Switch the app to ``mode``. Returns False when nothing had to (or could) be clicked."""
        if not mode:
            return False
        options = self.profile.mode_options.get(mode)
        if not options:
            raise ConfigurationError(
                f"Profile {self.profile.name!r} has no mode {mode!r} (known: {', '.join(self.profile.mode_options) or 'none'})"
            )

        switch = await find_visible(self.profile.mode_switch, page)
        if switch is None:
            logger.warning(f"⚠️ Mode switch not found ({describe(self.profile.mode_switch)}), keeping current mode")
            return False

        label = self.profile.mode_labels.get(mode)
        if label and label in (await switch.inner_text()):
            logger.info(f"🎛️ Already in mode {mode!r}")
            return False

        await switch.click()
        try:
            option = await wait_visible(
                options, page, timeout_ms=MODE_MENU_TIMEOUT_MS, interval_ms=MODE_MENU_INTERVAL_MS, label=f"mode option {mode!r}"
            )
        except WaitTimeoutError:
            logger.debug("Mode menu did not open, clicking the switch again")
            await switch.click()
            option = await wait_visible(
                options, page, timeout_ms=MODE_MENU_TIMEOUT_MS, interval_ms=MODE_MENU_INTERVAL_MS, label=f"mode option {mode!r}"
            )
        await option.click()
        await page.wait_for_timeout(SETTLE_MS)

        if label:
            switch = await find_visible(self.profile.mode_switch, page)
            current = await switch.inner_text() if switch is not None else ""
            if label not in current:
                logger.warning(f"⚠️ Mode switch to {mode!r} may have failed (switch reads {current.strip()!r})")
                return True
        logger.info(f"🎛️ Switched to mode {mode!r}")
        return True

    # --- input / submit ---

    async def fill_input(self, page: Page, text: str) -> None:
        box = await wait_visible(
            self.profile.input, page, timeout_ms=self.step_timeout_ms, interval_ms=self.interval_ms, label="input box"
        )
        await box.click()
        if self.profile.input_method == "type":
            await page.keyboard.type(text, delay=5)
        else:
            await box.fill(text)
        await page.wait_for_timeout(SETTLE_MS)

    async def submit(self, page: Page) -> None:
        """Click the submit element once it is enabled; press the fallback key when the app has none."""
        button = await find_visible(self.profile.submit, page)
        if button is None:
            if self.profile.submit_fallback_key:
                logger.debug(f"⌨️ No submit button visible, pressing {self.profile.submit_fallback_key}")
                await page.keyboard.press(self.profile.submit_fallback_key)
                return
            button = await wait_visible(
                self.profile.submit, page, timeout_ms=self.step_timeout_ms, interval_ms=self.interval_ms, label="submit button"
            )

        await wait_until(button.is_enabled, timeout_ms=self.step_timeout_ms, interval_ms=self.interval_ms, label="submit enabled")
        await button.click()
        logger.info("📨 Submitted")

    # --- completion signals ---

    async def check_error(self, page: Page) -> None:
        """Raise ApplicationError when the app shows one of its error indicators."""
        if not self.profile.error:
            return
        element = await find_visible(self.profile.error, page)
        if element is None:
            return
        text = (await element.inner_text()).strip()
        if self.profile.error_texts and not any(marker in text for marker in self.profile.error_texts):
            return
        raise ApplicationError(f"Application reported an error: {text[:200]}", ui_text=text)

    async def is_busy(self, page: Page) -> bool:
        return await any_visible(self.profile.busy, page)

    async def response_count(self, page: Page) -> int:
        return await count_matching(self.profile.responses, page)

    async def read_last_response(self, page: Page) -> Optional[str]:
        return await last_text(self.profile.responses, page)

    async def completion_count(self, page: Page) -> int:
        return await count_matching(self.profile.completion, page)

    async def find_latest_completion(self, page: Page):
        return await find_last_visible(self.profile.completion, page)
