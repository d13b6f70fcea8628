# centralize imports for browser typing

from playwright.async_api import Browser, BrowserContext, Download, ElementHandle, Frame, Page, Playwright, Request
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

# anything we can run DOM queries against
Scope = Page | Frame | ElementHandle

__all__ = [
	'Browser',
	'BrowserContext',
	'Download',
	'ElementHandle',
	'Frame',
	'Page',
	'Playwright',
	'PlaywrightError',
	'PlaywrightTimeoutError',
	'Request',
	'Scope',
	'async_playwright',
]
