import os

import pytest

# keep autopilot from installing its stderr handler during tests
os.environ.setdefault("AUTOPILOT_SETUP_LOGGING", "false")

from autopilot.browser.session import BrowserSession  # noqa: E402
from fakes import FakePlaywright  # noqa: E402


@pytest.fixture
def fake_playwright() -> FakePlaywright:
    return FakePlaywright()


@pytest.fixture
def session(fake_playwright: FakePlaywright) -> BrowserSession:
    return BrowserSession(cdp_url="http://127.0.0.1:9222", playwright=fake_playwright)
