"""Cookie-backed forum login for a :class:`~forumharvest.browser.BrowserSession`."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from .config import SiteConfig
from .errors import HarvesterError, SessionError

logger = logging.getLogger("forumharvest.session")

LOGGED_IN_MARKER = 'a[href="/account/"]'
LOGIN_LINKS = ('a[href="/login/"]', "a.p-navgroup-link--logIn")
LOGIN_INPUT = 'input[name="login"]'
PASSWORD_INPUT = 'input[name="password"]'
SUBMIT_BUTTONS = (
    'button[type="submit"].button--primary.button--icon--login',
    'button.button--primary[type="submit"]',
    'button[type="submit"]',
)
COOKIE_NOTICE = 'a[href*="/misc/cookies"][class*="button--notice"]'

# Fields Playwright accepts in add_cookies()
COOKIE_FIELDS = ("name", "value", "domain", "path", "expires", "httpOnly", "secure", "sameSite")


class CookieSessionProvider:
    """Reuse saved cookies when they still log us in, else log in with the form."""

    def __init__(self, site: SiteConfig, *, form_timeout: float = 10.0) -> None:
        self.site = site
        self.cookies_path = Path(site.cookies_path)
        self.form_timeout = form_timeout

    async def ensure_authenticated(self, session: Any) -> bool:
        if await self.load_cookies(session) and await self.is_logged_in(session):
            logger.info("Reusing saved session cookies")
            return True
        if not self.site.username or not self.site.password:
            logger.error("Not logged in and no FORUM_USERNAME/FORUM_PASSWORD configured")
            return False
        if await self.login(session):
            await self.save_cookies(session)
            logger.info("Logged in as %s", self.site.username)
            return True
        return False

    # ── cookies ──────────────────────────────────────────────────

    async def load_cookies(self, session: Any) -> bool:
        if not self.cookies_path.exists():
            return False
        try:
            raw = json.loads(self.cookies_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cookie file %s: %s", self.cookies_path, exc)
            return False
        cookies = [
            {k: c[k] for k in COOKIE_FIELDS if k in c}
            for c in raw
            if isinstance(c, dict) and "name" in c and "value" in c
        ]
        if not cookies:
            return False
        try:
            await session.add_cookies(cookies)
        except PlaywrightError as exc:
            logger.warning("Saved cookies rejected: %s", exc)
            return False
        logger.debug("Loaded %d cookie(s) from %s", len(cookies), self.cookies_path)
        return True

    async def save_cookies(self, session: Any) -> None:
        cookies = await session.cookies()
        try:
            self.cookies_path.write_text(json.dumps(cookies, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not save cookies to %s: %s", self.cookies_path, exc)

    # ── login ────────────────────────────────────────────────────

    async def dismiss_cookie_notice(self, page: Any) -> None:
        button = await page.query_selector(COOKIE_NOTICE)
        if button is not None:
            await button.click()
            logger.debug("Dismissed cookie notice")

    async def is_logged_in(self, session: Any) -> bool:
        try:
            page = await session.goto(self.site.forum_url)
            await self.dismiss_cookie_notice(page)
            return await page.query_selector(LOGGED_IN_MARKER) is not None
        except (HarvesterError, PlaywrightError) as exc:
            logger.debug("Login check failed: %s", exc)
            return False

    async def login(self, session: Any) -> bool:
        try:
            page = await session.goto(self.site.forum_url)
            await self.dismiss_cookie_notice(page)
            if await page.query_selector(LOGGED_IN_MARKER) is not None:
                return True

            for selector in LOGIN_LINKS:
                link = await page.query_selector(selector)
                if link is not None:
                    await link.click()
                    break

            await page.wait_for_selector(LOGIN_INPUT, timeout=self.form_timeout * 1000)
            await page.fill(LOGIN_INPUT, self.site.username)
            await page.fill(PASSWORD_INPUT, self.site.password)

            for selector in SUBMIT_BUTTONS:
                button = await page.query_selector(selector)
                if button is not None:
                    await button.click()
                    break
            else:
                raise SessionError("login form has no submit button")

            await page.wait_for_selector(LOGGED_IN_MARKER, timeout=self.form_timeout * 1000)
            return True
        except PlaywrightTimeoutError:
            logger.error("Login did not complete within %.0fs", self.form_timeout)
            return False
        except (HarvesterError, PlaywrightError) as exc:
            logger.error("Login failed: %s", exc)
            return False
