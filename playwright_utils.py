#!/usr/bin/env python3
"""
Playwright page helpers used by the scanner and the downloader.

These wrap the handful of browser operations the orchestrators depend on:
opening a page, waiting for the network to go quiet after navigation, querying
elements, reading attributes and pulling a binary response body.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError

# Optional stealth mode - gracefully degrade if not available
try:
    from playwright_stealth import stealth_async
    STEALTH_AVAILABLE = True
except ImportError:
    STEALTH_AVAILABLE = False
    stealth_async = None


CHROME_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-blink-features=AutomationControlled',
]

DEFAULT_LAUNCH_OPTIONS = {
    'headless': True,
    'args': CHROME_ARGS,
}

# Wait until no network connections for 500ms, give up after 30s
DEFAULT_NAVIGATION_OPTIONS = {
    'wait_until': 'networkidle',
    'timeout': 30000,
}

VIEWPORT = {'width': 1280, 'height': 800}

USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)


class NavigationError(Exception):
    """A page could not be loaded."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url


class FetchError(NavigationError):
    """A binary resource could not be retrieved."""


async def create_page(browser, stealth: bool = False):
    """Create a new page with common settings.

    Args:
        browser: Playwright browser
        stealth: Apply playwright-stealth patches when installed

    Returns:
        New page
    """
    page = await browser.new_page(viewport=VIEWPORT, user_agent=USER_AGENT)
    if stealth and STEALTH_AVAILABLE:
        await stealth_async(page)
    return page


@asynccontextmanager
async def open_page(session):
    """Open a page on a pooled session and always close it afterwards."""
    page = await session.new_page()
    try:
        yield page
    finally:
        await page.close()


async def navigate(page, url: str, wait_until: Optional[str] = None,
                   timeout: Optional[int] = None):
    """Navigate to a URL and wait for the page to settle.

    Args:
        page: Playwright page
        url: URL to navigate to
        wait_until: Playwright load state to wait for (default: networkidle)
        timeout: Navigation timeout in milliseconds

    Returns:
        Playwright response, or None when the browser produced none

    Raises:
        NavigationError: on timeouts and browser errors
    """
    options = {
        'wait_until': wait_until or DEFAULT_NAVIGATION_OPTIONS['wait_until'],
        'timeout': timeout if timeout is not None else DEFAULT_NAVIGATION_OPTIONS['timeout'],
    }
    try:
        return await page.goto(url, **options)
    except PlaywrightError as e:
        raise NavigationError(url, f"Failed to navigate: {e}") from e


async def query_all(page, selector: str) -> List:
    """All elements matching a CSS selector; an empty list when none match."""
    return await page.query_selector_all(selector) or []


async def get_attribute(element, name: str, logger=None) -> Optional[str]:
    """Read an attribute from an element, None when missing or detached."""
    try:
        return await element.get_attribute(name)
    except PlaywrightError as e:
        if logger:
            logger.debug(f"Error reading attribute '{name}': {e}")
        return None


async def fetch_binary(page, url: str, wait_until: Optional[str] = None,
                       timeout: Optional[int] = None) -> bytes:
    """Navigate to a resource and return its response body.

    Raises:
        FetchError: when there is no response or the body is empty
    """
    try:
        response = await navigate(page, url, wait_until=wait_until, timeout=timeout)
    except NavigationError as e:
        raise FetchError(url, f"Failed to fetch image: {e.__cause__ or e}") from e

    if response is None:
        raise FetchError(url, "Failed to fetch image: no response")

    try:
        body = await response.body()
    except PlaywrightError as e:
        raise FetchError(url, f"Failed to read image data: {e}") from e

    if not body:
        raise FetchError(url, "No image data received")
    return body


async def page_content(page) -> str:
    """Rendered HTML of the current page."""
    return await page.content()
