#!/usr/bin/env python3
"""
Bounded pool of headless browser sessions.

Each session is one launched Chromium browser. Callers borrow a session with
``acquire()`` (or the ``session()`` context manager) and hand it back with
``release()``. Idle sessions are closed by a background reaper once they have
been unused for longer than the configured idle timeout.
"""

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import async_playwright

from playwright_utils import DEFAULT_LAUNCH_OPTIONS, create_page


class SessionCreationError(Exception):
    """The browser for a new session could not be launched."""


class PoolClosedError(Exception):
    """The pool was shut down."""


@dataclass(frozen=True)
class PoolConfig:
    """Pool settings, fixed for the lifetime of the pool.

    Args:
        max_instances: Upper bound on live browser sessions
        idle_timeout: Seconds an idle session may live before it is reaped
        launch_options: Keyword arguments for chromium.launch()
        reap_interval: Seconds between reaper ticks
        stealth: Apply playwright-stealth to new pages
    """
    max_instances: int = 4
    idle_timeout: float = 5 * 60.0
    launch_options: Dict[str, Any] = field(
        default_factory=lambda: dict(DEFAULT_LAUNCH_OPTIONS)
    )
    reap_interval: float = 60.0
    stealth: bool = False

    def __post_init__(self):
        if self.max_instances < 1:
            raise ValueError("max_instances must be at least 1")


class BrowserSession:
    """One pooled browser and its bookkeeping."""

    def __init__(self, session_id: int, browser, stealth: bool = False):
        self.session_id = session_id
        self.browser = browser
        self.stealth = stealth
        self.busy = True
        self.last_used_at = time.monotonic()

    async def new_page(self):
        return await create_page(self.browser, stealth=self.stealth)

    async def close(self):
        await self.browser.close()

    def __repr__(self):
        state = "busy" if self.busy else "idle"
        return f"BrowserSession(id={self.session_id}, {state})"


Launcher = Callable[[Dict[str, Any]], Awaitable[Any]]


class BrowserPool:
    """Manages browser sessions with pooling and lifecycle management."""

    def __init__(self, config: Optional[PoolConfig] = None, logger=None,
                 launcher: Optional[Launcher] = None):
        """Initialize the pool.

        Args:
            config: Pool configuration (defaults to PoolConfig())
            logger: Logger instance
            launcher: Async callable returning a browser for the given launch
                options. Defaults to launching Chromium through Playwright.
        """
        self.config = config or PoolConfig()
        self.logger = logger
        self._launcher = launcher
        self._playwright = None
        self._sessions: List[BrowserSession] = []
        self._launching = 0
        self._next_id = 1
        self._condition = asyncio.Condition()
        self._reaper_task: Optional[asyncio.Task] = None
        self._closed = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    async def start(self):
        """Start Playwright (when launching browsers ourselves) and the reaper."""
        if self._closed:
            raise PoolClosedError("Browser pool has been shut down")
        if self._launcher is None and self._playwright is None:
            self._playwright = await async_playwright().start()
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap_loop())

    @property
    def instance_count(self) -> int:
        """Current number of browser sessions."""
        return len(self._sessions)

    @property
    def in_use_count(self) -> int:
        """Number of sessions currently held by callers."""
        return sum(1 for session in self._sessions if session.busy)

    async def _launch(self, options: Dict[str, Any]):
        if self._launcher is not None:
            return await self._launcher(options)
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(**options)

    def _take_idle(self) -> Optional[BrowserSession]:
        for session in self._sessions:
            if not session.busy:
                session.busy = True
                session.last_used_at = time.monotonic()
                return session
        return None

    async def acquire(self) -> BrowserSession:
        """Acquire a browser session from the pool.

        Reuses an idle session when there is one, launches a new one while the
        pool is below max_instances, and otherwise waits for a release.

        Raises:
            SessionCreationError: when launching a new browser fails
            PoolClosedError: when the pool has been shut down
        """
        async with self._condition:
            while True:
                if self._closed:
                    raise PoolClosedError("Browser pool has been shut down")
                session = self._take_idle()
                if session:
                    return session
                if len(self._sessions) + self._launching < self.config.max_instances:
                    self._launching += 1
                    break
                await self._condition.wait()

        browser = None
        session = None
        try:
            browser = await self._launch(self.config.launch_options)
        except Exception as e:
            if self.logger:
                self.logger.debug(f"Error creating new browser: {e}")
            raise SessionCreationError(f"Failed to create new browser instance: {e}") from e
        finally:
            async with self._condition:
                self._launching -= 1
                if browser is not None and not self._closed:
                    session = BrowserSession(self._next_id, browser, stealth=self.config.stealth)
                    self._next_id += 1
                    self._sessions.append(session)
                else:
                    # The reserved slot is free again
                    self._condition.notify()

        if session is None:
            # Shut down while the browser was launching
            await self._close_session(BrowserSession(0, browser))
            raise PoolClosedError("Browser pool has been shut down")

        if self.logger:
            self.logger.debug(f"Launched browser session {session.session_id} "
                              f"({self.instance_count}/{self.config.max_instances})")
        return session

    async def release(self, session: BrowserSession):
        """Release a browser session back to the pool."""
        async with self._condition:
            if session not in self._sessions:
                return
            session.busy = False
            session.last_used_at = time.monotonic()
            self._condition.notify()

    @asynccontextmanager
    async def session(self):
        """Borrow a session for the duration of a block."""
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def _close_session(self, session: BrowserSession):
        try:
            await session.close()
        except Exception as e:
            if self.logger:
                self.logger.warning(f"Error closing browser session {session.session_id}: {e}")

    async def reap_idle_sessions(self) -> int:
        """Close sessions that have been idle longer than the idle timeout.

        Returns:
            Number of sessions closed
        """
        now = time.monotonic()
        async with self._condition:
            expired = [
                session for session in self._sessions
                if not session.busy and now - session.last_used_at > self.config.idle_timeout
            ]
            for session in expired:
                self._sessions.remove(session)
            if expired:
                self._condition.notify(len(expired))

        for session in expired:
            await self._close_session(session)

        if expired and self.logger:
            self.logger.debug(f"Closed {len(expired)} idle browser session(s)")
        return len(expired)

    async def _reap_loop(self):
        while True:
            await asyncio.sleep(self.config.reap_interval)
            await self.reap_idle_sessions()

    async def shutdown(self):
        """Stop the reaper and close every session, busy or not."""
        self._closed = True

        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None

        async with self._condition:
            sessions = list(self._sessions)
            self._sessions.clear()
            self._condition.notify_all()

        await asyncio.gather(*(self._close_session(s) for s in sessions))

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

        if sessions and self.logger:
            self.logger.debug(f"Browser pool shut down ({len(sessions)} session(s) closed)")
