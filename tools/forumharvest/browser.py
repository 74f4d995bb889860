"""Playwright browser session – one persistent Chromium context per worker."""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import BrowserConfig, SiteConfig
from .errors import AssetResolutionFailure, NavigationError, NavigationTimeout, SessionError
from .interfaces import SessionProvider

logger = logging.getLogger("forumharvest.browser")


class BrowserSession:
    """Owns the Playwright driver, a temporary profile directory and the main page.

    The main page carries the sequential crawl.  Attachment resolution uses
    :meth:`auxiliary_page`, which opens extra pages in the same authenticated
    context so the crawl page is never navigated away.
    """

    def __init__(
        self,
        cfg: BrowserConfig,
        site: SiteConfig,
        provider: SessionProvider,
        *,
        navigation_timeout: float = 30.0,
    ) -> None:
        self.cfg = cfg
        self.site = site
        self.provider = provider
        self.navigation_timeout = navigation_timeout
        self._pw: Playwright | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self.profile_dir: str | None = None
        self.restarts = 0

    # ── lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self.profile_dir = tempfile.mkdtemp(prefix=self.cfg.profile_prefix)
        self._pw = await async_playwright().start()
        try:
            self._context = await self._pw.chromium.launch_persistent_context(
                self.profile_dir,
                headless=self.cfg.headless,
                executable_path=self.cfg.executable_path,
                args=list(self.cfg.launch_args),
                user_agent=self.site.user_agent,
                viewport={"width": self.cfg.viewport_width, "height": self.cfg.viewport_height},
                ignore_https_errors=True,
            )
        except PlaywrightError as exc:
            await self.close()
            raise SessionError(f"browser launch failed: {exc}") from exc
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        logger.info("Browser started (profile %s)", self.profile_dir)

        try:
            authenticated = await self.provider.ensure_authenticated(self)
        except BaseException:
            await self.close()
            raise
        if not authenticated:
            await self.close()
            raise SessionError("could not authenticate browser session")

    async def close(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as exc:
                logger.warning("Error closing browser context: %s", exc)
        if self._pw is not None:
            await self._pw.stop()
        self._context = None
        self._page = None
        self._pw = None
        if self.profile_dir:
            shutil.rmtree(self.profile_dir, ignore_errors=True)
            logger.debug("Deleted profile directory %s", self.profile_dir)
            self.profile_dir = None

    async def restart(self) -> None:
        """Tear down the browser, drop its profile, start fresh and re-authenticate."""
        logger.info("Restarting browser")
        await self.close()
        await self.start()
        self.restarts += 1

    async def __aenter__(self) -> BrowserSession:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ── navigation ───────────────────────────────────────────────

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            raise SessionError("browser session is not started")
        return self._context

    @property
    def page(self) -> Page:
        if self._page is None:
            raise SessionError("browser session is not started")
        return self._page

    async def goto(self, url: str, *, timeout: float | None = None) -> Page:
        """Navigate the main page and wait for the network to settle."""
        timeout = timeout if timeout is not None else self.navigation_timeout
        try:
            await self.page.goto(url, wait_until="networkidle", timeout=timeout * 1000)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(f"{url}: no load within {timeout:.0f}s") from exc
        except PlaywrightError as exc:
            raise NavigationError(f"{url}: {exc}") from exc
        return self.page

    @asynccontextmanager
    async def auxiliary_page(self) -> AsyncIterator[Page]:
        page = await self.context.new_page()
        try:
            yield page
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                logger.warning("Error closing auxiliary page: %s", exc)

    async def fetch(self, url: str, *, timeout: float | None = None) -> bytes:
        """GET ``url`` with the session's cookies."""
        timeout = timeout if timeout is not None else self.navigation_timeout
        try:
            resp = await self.context.request.get(url, timeout=timeout * 1000)
        except PlaywrightError as exc:
            raise AssetResolutionFailure(f"{url}: {exc}") from exc
        if not resp.ok:
            raise AssetResolutionFailure(f"{url}: HTTP {resp.status}")
        return await resp.body()

    # ── cookies ──────────────────────────────────────────────────

    async def cookies(self) -> list[dict[str, Any]]:
        return list(await self.context.cookies())

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        await self.context.add_cookies(cookies)  # type: ignore[arg-type]

