from __future__ import annotations

import asyncio
import logging
import tempfile
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from enum import Enum
from functools import wraps
from pathlib import Path
from typing import Any, Self, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from autopilot.browser.types import Page, PlaywrightTimeoutError, async_playwright
from autopilot.exceptions import TransientSessionError, WaitTimeoutError, is_disconnect_error

T = TypeVar('T')

ReconnectHook = Callable[[Any], Awaitable[None]]


class SessionState(str, Enum):
	DISCONNECTED = 'disconnected'
	CONNECTING = 'connecting'
	CONNECTED = 'connected'


def require_live_session(func):
	"""Decorator for BrowserSession methods that act on the current page.

	Makes sure the session is live before the call, and when the call dies with a disconnection
	signature, marks the session disconnected and re-raises it as TransientSessionError so the
	next ensure_live() rebuilds it.
	"""
	assert asyncio.iscoroutinefunction(func), '@require_live_session only supports async methods'

	@wraps(func)
	async def wrapper(self: BrowserSession, *args, **kwargs):
		await self.ensure_live()
		try:
			return await func(self, *args, **kwargs)
		except TransientSessionError:
			self._mark_disconnected()
			raise
		except Exception as e:
			if not is_disconnect_error(e):
				raise
			self.logger.warning(
				f'✂️ Browser {self._connection_str} disconnected during BrowserSession.{func.__name__}() (error: {type(e).__name__}: {e})'
			)
			self._mark_disconnected()
			raise TransientSessionError(f'{func.__name__}: {type(e).__name__}: {e}') from e

	return wrapper


class RequestCapture:
	"""Collects URLs of page requests accepted by ``matcher`` while a capture is active"""

	def __init__(self, matcher: Callable[[str], bool]):
		self.matcher = matcher
		self.urls: list[str] = []

	def handle(self, request: Any) -> None:
		url = request.url
		if self.matcher(url) and url not in self.urls:
			self.urls.append(url)

	@property
	def latest(self) -> str | None:
		return self.urls[-1] if self.urls else None


class BrowserSession(BaseModel):
	"""
	Owns the single live connection to the browser and the one page autopilot drives.

	Connects to an already running Chromium over CDP when `cdp_url` is set, otherwise launches a
	persistent context from `user_data_dir`. Page handles may be replaced by ensure_live() and
	with_retry(), so callers must re-fetch the page rather than caching it across those calls.
	"""

	model_config = ConfigDict(
		extra='forbid',
		validate_assignment=False,
		arbitrary_types_allowed=True,
	)

	id: str = Field(default_factory=lambda: uuid.uuid4().hex)

	cdp_url: str | None = Field(default=None, description='CDP endpoint of the running browser, e.g. http://127.0.0.1:9222')
	user_data_dir: Path | None = Field(default=None, description='Profile dir for launch mode (used only without cdp_url)')
	headless: bool = Field(default=False, description='Launch mode only')
	reuse_page: bool = Field(default=False, description='Drive the first existing tab instead of opening a new one')
	connect_timeout_ms: float = Field(default=30_000, description='Budget for connect_over_cdp / launch')

	# runtime props/state: these can be passed in as props at init, or get auto-setup by BrowserSession.start()
	playwright: Any | None = Field(default=None, exclude=True, description='Playwright object from async_playwright().start()')
	browser: Any | None = Field(default=None, exclude=True)
	browser_context: Any | None = Field(default=None, exclude=True)
	agent_current_page: Any | None = Field(default=None, exclude=True, description='The page every operation acts on')

	state: SessionState = SessionState.DISCONNECTED
	reconnect_count: int = Field(default=0, description='Recoveries performed after the first successful connect')
	on_reconnect: ReconnectHook | None = Field(
		default=None,
		exclude=True,
		description='Awaited after every recovery, must re-establish login/working-context preconditions',
	)

	_owns_playwright: bool = PrivateAttr(default=False)
	_owns_context: bool = PrivateAttr(default=False)
	_owned_pages: list[Any] = PrivateAttr(default_factory=list)
	_has_connected: bool = PrivateAttr(default=False)
	_logger: logging.Logger | None = PrivateAttr(default=None)

	@property
	def logger(self) -> logging.Logger:
		"""Get instance-specific logger with session ID in the name"""
		if self._logger is None:
			self._logger = logging.getLogger(f'autopilot.BrowserSession.{self.id[-4:]}')
		return self._logger

	@property
	def _connection_str(self) -> str:
		return f'cdp_url={self.cdp_url}' if self.cdp_url else f'user_data_dir={self.user_data_dir or "<temp>"}'

	def __str__(self) -> str:
		return f'BrowserSession🆂 {self.id[-4:]} ({self._connection_str}, {self.state.value})'

	async def __aenter__(self) -> BrowserSession:
		await self.start()
		return self

	async def __aexit__(self, exc_type, exc_val, exc_tb):
		await self.stop()

	# --- connecting ---

	async def start(self) -> Self:
		"""Connect (or launch) and open the working page. Returns immediately if already live."""
		if self.state == SessionState.CONNECTED and await self.is_connected():
			return self

		if self.state == SessionState.CONNECTED:
			self.logger.warning(f'💔 Browser {self._connection_str} has gone away, attempting to reconnect...')
		self._reset_connection_state()

		self.state = SessionState.CONNECTING
		try:
			await self.setup_playwright()
			if self.cdp_url:
				await self.setup_browser_via_cdp_url()
			else:
				await self.setup_persistent_context()
			await self._open_page(reuse=self.reuse_page)
		except BaseException:
			self._reset_connection_state()
			raise

		self.state = SessionState.CONNECTED
		return self

	async def setup_playwright(self) -> None:
		if self.playwright is None:
			self.playwright = await async_playwright().start()
			self._owns_playwright = True

	async def setup_browser_via_cdp_url(self) -> None:
		"""Connect to a remote chromium-based browser via CDP, adopting its first context"""
		self.logger.info(f'🌎 Connecting to existing chromium-based browser via CDP: {self.cdp_url} -> (remote browser)')
		assert self.playwright is not None, 'playwright instance is None'
		self.browser = await self.playwright.chromium.connect_over_cdp(self.cdp_url, timeout=self.connect_timeout_ms)

		if self.browser.contexts:
			self.browser_context = self.browser.contexts[0]
			self._owns_context = False
		else:
			self.logger.debug('🆕 Remote browser has no contexts, creating one')
			self.browser_context = await self.browser.new_context(accept_downloads=True)
			self._owns_context = True

	async def setup_persistent_context(self) -> None:
		"""Launch a local chromium with a persistent profile (no CDP endpoint supplied)"""
		assert self.playwright is not None, 'playwright instance is None'
		if self.user_data_dir is None:
			self.user_data_dir = Path(tempfile.mkdtemp(prefix='autopilot-profile-'))
		self.logger.info(f'🚀 Launching chromium with persistent profile user_data_dir={self.user_data_dir}')
		self.browser_context = await self.playwright.chromium.launch_persistent_context(
			str(self.user_data_dir),
			headless=self.headless,
			accept_downloads=True,
			timeout=self.connect_timeout_ms,
		)
		self.browser = self.browser_context.browser
		self._owns_context = True

	async def _open_page(self, reuse: bool = False) -> Page:
		assert self.browser_context is not None, 'Browser context is not set'
		open_pages = [p for p in self.browser_context.pages if not p.is_closed()]
		if reuse and open_pages:
			page = open_pages[0]
		else:
			page = await self.browser_context.new_page()
			self._owned_pages.append(page)
		self.agent_current_page = page
		return page

	# --- liveness ---

	async def is_connected(self) -> bool:
		"""
		Check if the session has a connected browser and a responsive page.
		Any failure of the probe means the session is not usable.
		"""
		if not self.browser_context or not self.agent_current_page:
			return False
		if self.browser is not None and not self.browser.is_connected():
			return False
		if self.agent_current_page.is_closed():
			return False
		try:
			return await self.agent_current_page.evaluate('() => true') is True
		except Exception as e:
			self.logger.debug(f'🩺 Liveness probe failed: {type(e).__name__}: {e}')
			return False

	def _browser_alive(self) -> bool:
		if self.browser_context is None:
			return False
		return self.browser is None or self.browser.is_connected()

	def _mark_disconnected(self) -> None:
		if self.state != SessionState.DISCONNECTED:
			self.logger.debug(f'⚰️ Browser {self._connection_str} marked disconnected')
		self.state = SessionState.DISCONNECTED

	def _reset_connection_state(self) -> None:
		"""Forget every handle tied to the previous connection (the playwright object survives)"""
		self.state = SessionState.DISCONNECTED
		self.browser = None
		self.browser_context = None
		self.agent_current_page = None
		self._owned_pages = []
		self._owns_context = False

	async def ensure_live(self) -> Page:
		"""
		Return a usable page, recovering the session if needed. Idempotent when already live.

		A recovery reopens just the page when the browser is still connected, otherwise it
		reconnects from scratch. Every recovery after the first connect bumps reconnect_count and
		awaits on_reconnect so login and working-context preconditions are checked again.
		"""
		if self.state == SessionState.CONNECTED and await self.is_connected():
			return self.agent_current_page

		recovering = self._has_connected
		recovered_page = False

		if recovering and self._browser_alive():
			self.logger.warning(f'🩹 Page lost on {self._connection_str}, opening a fresh one')
			stale = self.agent_current_page
			try:
				await self._open_page(reuse=False)
				recovered_page = await self.is_connected()
			except Exception as e:
				if not is_disconnect_error(e):
					raise
				self.logger.debug(f'Page-only recovery failed, reconnecting: {type(e).__name__}: {e}')
			if recovered_page:
				self.state = SessionState.CONNECTED
				await self._close_stale_page(stale)

		if not recovered_page:
			if recovering:
				self.logger.warning(f'🔌 Reconnecting to {self._connection_str}...')
			await self.start()

		self._has_connected = True
		if recovering:
			self.reconnect_count += 1
			self.logger.info(f'✅ Session recovered (reconnect #{self.reconnect_count})')
			if self.on_reconnect is not None:
				await self.on_reconnect(self)
		return self.agent_current_page

	async def _close_stale_page(self, page: Any) -> None:
		if page is None or page not in self._owned_pages:
			return
		self._owned_pages.remove(page)
		try:
			if not page.is_closed():
				await page.close()
		except Exception as e:
			self.logger.debug(f'Stale page already unusable: {type(e).__name__}: {e}')

	async def get_current_page(self) -> Page:
		return await self.ensure_live()

	async def with_retry(
		self,
		op: Callable[[Page], Awaitable[T]],
		max_attempts: int = 2,
		label: str | None = None,
	) -> T:
		"""
		Run `op(page)` and retry it after a reconnect when it fails with a disconnection signature.

		`op` receives a freshly fetched page on every attempt. Any other failure propagates
		unchanged and without reconnecting.
		"""
		label = label or getattr(op, '__name__', 'operation')
		last_error: BaseException | None = None
		for attempt in range(1, max_attempts + 1):
			page = await self.ensure_live()
			try:
				return await op(page)
			except Exception as e:
				if not is_disconnect_error(e):
					raise
				last_error = e
				self.logger.warning(
					f'✂️ {label} lost the browser on attempt {attempt}/{max_attempts}: {type(e).__name__}: {e}'
				)
				self._mark_disconnected()
		raise TransientSessionError(f'{label} failed after {max_attempts} attempts: {last_error}') from last_error

	# --- page events ---

	@require_live_session
	async def expect_event(self, event: str, trigger: Callable[[], Awaitable[Any]], timeout_ms: float) -> Any:
		"""Run `trigger` and return the single `event` it causes (e.g. 'download'), or raise WaitTimeoutError"""
		page = self.agent_current_page
		try:
			async with page.expect_event(event, timeout=timeout_ms) as event_info:
				await trigger()
			return await event_info.value
		except PlaywrightTimeoutError as e:
			raise WaitTimeoutError(f'{event} event', timeout_ms, e) from e

	@asynccontextmanager
	async def capture_requests(self, matcher: Callable[[str], bool]) -> AsyncIterator[RequestCapture]:
		"""Record URLs of matching requests issued by the current page while the block runs"""
		page = await self.ensure_live()
		capture = RequestCapture(matcher)
		page.on('request', capture.handle)
		try:
			yield capture
		finally:
			page.remove_listener('request', capture.handle)
			if capture.urls:
				self.logger.debug(f'🕸️ Captured {len(capture.urls)} matching request(s)')

	async def capture_diagnostics(self, path: Path | str) -> Path | None:
		"""Best-effort screenshot of the current page. Never raises, returns None when nothing was saved."""
		page = self.agent_current_page
		if page is None:
			return None
		try:
			if page.is_closed():
				return None
			target = Path(path)
			target.parent.mkdir(parents=True, exist_ok=True)
			await page.screenshot(path=str(target), full_page=True, timeout=10_000)
		except Exception as e:
			self.logger.warning(f'📸 Could not capture diagnostic screenshot: {type(e).__name__}: {e}')
			return None
		self.logger.info(f'📸 Diagnostic screenshot saved: {target}')
		return target

	# --- teardown ---

	async def stop(self) -> None:
		"""Close what this session created. A remote browser reached over CDP keeps running."""
		for page in list(self._owned_pages):
			try:
				if not page.is_closed():
					await page.close()
			except Exception as e:
				self.logger.debug(f'Error closing page: {type(e).__name__}: {e}')

		if self._owns_context and self.browser_context is not None:
			self.logger.info(f'🛑 Closing browser context on {self._connection_str}')
			try:
				await self.browser_context.close()
			except Exception as e:
				self.logger.warning(f'⚠️ Error closing browser context: {type(e).__name__}: {e}')

		self._reset_connection_state()

		if self._owns_playwright and self.playwright is not None:
			try:
				await self.playwright.stop()
			except Exception as e:
				self.logger.debug(f'Error stopping playwright: {type(e).__name__}: {e}')
			self.playwright = None
			self._owns_playwright = False
