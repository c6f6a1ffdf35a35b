#!/usr/bin/env python3
"""
In-memory stand-ins for the Playwright objects the scraper touches, used by
the test modules. A FakeSite maps URLs to page images or image bytes.
"""

import asyncio
import tempfile
from typing import Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError

from scraper_logger import ScraperLogger


def make_logger() -> ScraperLogger:
    return ScraperLogger(tempfile.mkdtemp(prefix="test_logs_"), name="ProductImageScraperTest")


class FakeElement:
    def __init__(self, attributes: Dict[str, Optional[str]]):
        self.attributes = attributes

    async def get_attribute(self, name):
        await asyncio.sleep(0)
        return self.attributes.get(name)


class FakeResponse:
    def __init__(self, body: bytes):
        self._body = body

    async def body(self):
        return self._body


class FakeSite:
    """URLs served to fake pages.

    pages: product page URL -> list of <img> src values (None for no src)
    images: image URL -> bytes, None (no response) or an exception to raise
    on_goto: optional callback run before every navigation
    """

    def __init__(self, pages: Optional[Dict[str, List[Optional[str]]]] = None,
                 images: Optional[Dict[str, object]] = None,
                 on_goto: Optional[Callable[[str], None]] = None,
                 delay: float = 0.001):
        self.pages = pages or {}
        self.images = images or {}
        self.on_goto = on_goto
        self.delay = delay
        self.visits: List[str] = []
        self.opened_pages = 0
        self.closed_pages = 0

    async def goto(self, url):
        self.visits.append(url)
        if self.on_goto:
            self.on_goto(url)
        await asyncio.sleep(self.delay)

        if url in self.images:
            payload = self.images[url]
            if isinstance(payload, Exception):
                raise payload
            if payload is None:
                return None
            return FakeResponse(payload)

        if url in self.pages:
            return FakeResponse(b"<html></html>")

        raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")


class FakePage:
    def __init__(self, site: FakeSite):
        self.site = site
        self.url = None
        self.closed = False

    async def goto(self, url, wait_until=None, timeout=None):
        response = await self.site.goto(url)
        self.url = url
        return response

    async def query_selector_all(self, selector):
        sources = self.site.pages.get(self.url, [])
        return [FakeElement({'src': src}) for src in sources]

    async def content(self):
        sources = self.site.pages.get(self.url, [])
        tags = "".join(f'<img src="{src}">' for src in sources if src)
        return f"<html><head><title>Fake</title></head><body>{tags}</body></html>"

    async def close(self):
        self.closed = True
        self.site.closed_pages += 1


class FakeBrowser:
    def __init__(self, site: FakeSite):
        self.site = site
        self.closed = False

    async def new_page(self, **kwargs):
        self.site.opened_pages += 1
        return FakePage(self.site)

    async def close(self):
        self.closed = True


class FakeLauncher:
    """Async launcher for BrowserPool that hands out FakeBrowsers."""

    def __init__(self, site: Optional[FakeSite] = None, fail: bool = False,
                 delay: float = 0.001):
        self.site = site or FakeSite()
        self.fail = fail
        self.delay = delay
        self.browsers: List[FakeBrowser] = []

    @property
    def launch_count(self):
        return len(self.browsers)

    async def __call__(self, options):
        await asyncio.sleep(self.delay)
        if self.fail:
            raise PlaywrightError("Executable doesn't exist")
        browser = FakeBrowser(self.site)
        self.browsers.append(browser)
        return browser
