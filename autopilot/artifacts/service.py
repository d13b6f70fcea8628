"""
Turns a completion signal into a file on disk.

Strategies run in a fixed order and the first one that yields a non-empty file wins:
direct reference, click-triggered download event, captured network request, download-dir scan.
"""

import base64
import binascii
import logging
import re
import time
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Optional

import anyio
import httpx

from autopilot.agent.settings import TaskConfig
from autopilot.agent.views import LocalArtifact, PendingArtifact
from autopilot.agent.waiting import wait_until
from autopilot.artifacts.transcode import finalize
from autopilot.browser.selectors import find_last_visible, find_visible
from autopilot.browser.session import BrowserSession, RequestCapture
from autopilot.browser.types import Page
from autopilot.exceptions import AcquisitionError, FatalSignal, TransientSessionError, is_disconnect_error
from autopilot.profiles import SiteProfile

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"^data:([^;,]*)(?:;[^;,]*)*;base64,(.+)$", re.DOTALL)
REFERENCE_ATTRIBUTES = ("href", "src", "data-url", "data-src")

HTTP_TIMEOUT = httpx.Timeout(120.0, connect=15.0)
DOWNLOAD_EVENT_TIMEOUT_MS = 60_000
SCAN_TIMEOUT_MS = 30_000
SCAN_INTERVAL_MS = 2_000
SCAN_MAX_AGE_S = 300
SCAN_MIN_BYTES = 100_000

BLOB_TO_DATA_URL_JS = """
async (url) => {
    const response = await fetch(url);
    const blob = await response.blob();
    return await new Promise((resolve, reject) => {
        const reader = new FileReader();
        reader.onloadend = () => resolve(reader.result);
        reader.onerror = () => reject(reader.error);
        reader.readAsDataURL(blob);
    });
}
"""


def decode_data_url(url: str) -> bytes:
    match = DATA_URL_RE.match(url)
    if not match:
        raise ValueError("not a base64 data: URL")
    try:
        return base64.b64decode(match.group(2), validate=False)
    except binascii.Error as e:
        raise ValueError(f"bad base64 payload in data: URL: {e}") from e


async def write_bytes(dest: Path, data: bytes) -> int:
    dest.parent.mkdir(parents=True, exist_ok=True)
    async with await anyio.open_file(dest, "wb") as f:
        await f.write(data)
    return len(data)


class ArtifactAcquirer:
    def __init__(
        self,
        session: BrowserSession,
        profile: SiteProfile,
        config: TaskConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        scan_timeout_ms: float = SCAN_TIMEOUT_MS,
        scan_interval_ms: float = SCAN_INTERVAL_MS,
    ):
        self.session = session
        self.profile = profile
        self.config = config
        self.scan_timeout_ms = scan_timeout_ms
        self.scan_interval_ms = scan_interval_ms
        self._http_client = http_client

    @asynccontextmanager
    async def _http(self):
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(follow_redirects=True, timeout=HTTP_TIMEOUT) as client:
            yield client

    def capture(self):
        """Request capture for the configured result-URL patterns; open it before submitting to see every request."""
        return self.session.capture_requests(self.profile.matches_capture)

    async def acquire(
        self,
        pending: PendingArtifact,
        output_path: Path,
        capture: Optional[RequestCapture] = None,
    ) -> LocalArtifact:
        """Materialize ``pending`` at ``output_path``, raising AcquisitionError when every strategy fails."""
        page = await self.session.get_current_page()
        temp_path = output_path.with_name(f"{output_path.stem}.download{output_path.suffix or self.profile.artifact_suffix}")
        failures: list[str] = []

        async with AsyncExitStack() as stack:
            if capture is None:
                capture = await stack.enter_async_context(self.capture())

            strategies: list[tuple[str, Callable[[], Awaitable[Optional[str]]]]] = [
                ("direct", lambda: self._from_reference(page, pending, temp_path)),
                ("download_event", lambda: self._from_download_event(page, temp_path)),
                ("network_capture", lambda: self._from_captured_request(page, capture, temp_path)),
                ("filesystem_scan", lambda: self._from_download_dirs(temp_path)),
            ]
            for method, strategy in strategies:
                try:
                    source = await strategy()
                except FatalSignal:
                    raise
                except Exception as e:
                    if is_disconnect_error(e):
                        raise TransientSessionError(f"artifact {method}: {e}") from e
                    failures.append(f"{method}: {type(e).__name__}: {e}")
                    logger.warning(f"⚠️ Artifact method {method} failed: {type(e).__name__}: {e}")
                    continue
                if source is None:
                    failures.append(f"{method}: nothing found")
                    logger.debug(f"Artifact method {method} found nothing")
                    continue

                final_path = await finalize(
                    temp_path, output_path, transcode_enabled=self.config.transcode, keep_audio=self.config.keep_audio
                )
                size = final_path.stat().st_size
                logger.info(f"💾 Artifact saved via {method}: {final_path} ({size} bytes)")
                return LocalArtifact(path=final_path, size_bytes=size, method=method, source_url=source)

        raise AcquisitionError("All artifact acquisition methods failed: " + "; ".join(failures), failures)

    # --- strategy 1: direct reference ---

    async def _read_reference(self, pending: PendingArtifact, page: Page) -> Optional[str]:
        if pending.reference:
            return pending.reference
        candidates = [pending.element] if pending.element is not None else []
        if self.profile.artifact:
            found = await find_last_visible(self.profile.artifact, page)
            if found is not None:
                candidates.append(found)
        for element in candidates:
            for attribute in REFERENCE_ATTRIBUTES:
                value = await element.get_attribute(attribute)
                if value:
                    return value
        return None

    async def _from_reference(self, page: Page, pending: PendingArtifact, dest: Path) -> Optional[str]:
        reference = await self._read_reference(pending, page)
        if not reference:
            return None
        await self._materialize_url(page, reference, dest)
        return reference if not reference.startswith("data:") else "data:"

    async def _materialize_url(self, page: Page, url: str, dest: Path) -> int:
        if url.startswith("data:"):
            size = await write_bytes(dest, decode_data_url(url))
        elif url.startswith("blob:"):
            data_url = await page.evaluate(BLOB_TO_DATA_URL_JS, url)
            if not isinstance(data_url, str):
                raise ValueError("blob fetch returned no data")
            size = await write_bytes(dest, decode_data_url(data_url))
        elif url.startswith(("http://", "https://")):
            size = await self._fetch_http(page, url, dest)
        else:
            raise ValueError(f"unsupported artifact reference {url[:60]!r}")
        if size == 0:
            raise ValueError("artifact is empty")
        return size

    async def _cookie_header(self, page: Page, url: str) -> dict[str, str]:
        cookies = await page.context.cookies([url])
        if not cookies:
            return {}
        return {"Cookie": "; ".join(f"{c['name']}={c['value']}" for c in cookies)}

    async def _fetch_http(self, page: Page, url: str, dest: Path) -> int:
        headers = await self._cookie_header(page, url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        size = 0
        async with self._http() as client:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                async with await anyio.open_file(dest, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await f.write(chunk)
                        size += len(chunk)
        logger.debug(f"⬇️ Fetched {size} bytes from {url[:80]}")
        return size

    # --- strategy 2: click + download event ---

    async def _from_download_event(self, page: Page, dest: Path) -> Optional[str]:
        if not self.profile.download_trigger:
            return None
        trigger = await find_visible(self.profile.download_trigger, page)
        if trigger is None:
            return None

        timeout_ms = min(self.config.step_timeout_ms, DOWNLOAD_EVENT_TIMEOUT_MS)
        download = await self.session.expect_event("download", trigger.click, timeout_ms)
        url = download.url or ""
        if url.startswith("data:"):
            await write_bytes(dest, decode_data_url(url))
            return "data:"
        if url.startswith(("http://", "https://")):
            try:
                await self._materialize_url(page, url, dest)
                return url
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"Direct fetch of download URL failed, saving through the browser: {type(e).__name__}: {e}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        await download.save_as(str(dest))
        if not dest.exists() or dest.stat().st_size == 0:
            raise ValueError("browser download produced no bytes")
        return url or download.suggested_filename

    # --- strategy 3: captured network request ---

    async def _from_captured_request(self, page: Page, capture: RequestCapture, dest: Path) -> Optional[str]:
        for url in reversed(capture.urls):
            try:
                await self._fetch_http(page, url, dest)
            except httpx.HTTPError as e:
                logger.debug(f"Captured URL failed: {type(e).__name__}: {e}")
                continue
            if dest.stat().st_size > 0:
                return url
        return None

    # --- strategy 4: download directory scan ---

    def _scan_once(self) -> Optional[Path]:
        """Newest plausible artifact in the download dirs: right suffix and name, recent, not a stub."""
        now = time.time()
        best: Optional[tuple[float, Path]] = None
        for directory in self.config.download_dirs:
            if not directory.is_dir():
                continue
            for candidate in directory.iterdir():
                if candidate.suffix.lower() != self.profile.artifact_suffix.lower() or not candidate.is_file():
                    continue
                if self.profile.artifact_name_hints and not any(
                    re.search(hint, candidate.name) for hint in self.profile.artifact_name_hints
                ):
                    continue
                stat = candidate.stat()
                if now - stat.st_mtime > SCAN_MAX_AGE_S:
                    continue
                if stat.st_size < SCAN_MIN_BYTES:
                    continue
                if best is None or stat.st_mtime > best[0]:
                    best = (stat.st_mtime, candidate)
        return best[1] if best else None

    async def _from_download_dirs(self, dest: Path) -> Optional[str]:
        if not any(d.is_dir() for d in self.config.download_dirs):
            return None
        found: Path = await wait_until(
            self._scan_once,
            timeout_ms=self.scan_timeout_ms,
            interval_ms=self.scan_interval_ms,
            label="downloaded file",
        )
        async with await anyio.open_file(found, "rb") as f:
            await write_bytes(dest, await f.read())
        return str(found)
