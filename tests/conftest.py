"""Shared fakes for the forumharvest test-suite."""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from forumharvest.config import (
    BrowserConfig,
    CrawlConfig,
    DatabaseConfig,
    GuardianConfig,
    HarvesterConfig,
    PipelineConfig,
    S3Config,
    SiteConfig,
)
from forumharvest.errors import AssetResolutionFailure, NavigationTimeout, StorageWriteFailure
from forumharvest.models import ExtractedPost, ForumThread, MediaReference, ThreadSummary

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_config(**overrides) -> HarvesterConfig:
    params = dict(
        db=DatabaseConfig(),
        s3=S3Config(),
        site=SiteConfig(site_url="https://forum.test", forum_path="/forums/general.1/"),
        browser=BrowserConfig(),
        crawl=CrawlConfig(thread_pacing=0.0, listing_pacing=0.0, pages_before_recycle=0),
        pipeline=PipelineConfig(batch_size=4, base_delay=0.0, attempt_timeout=5.0),
        guardian=GuardianConfig(),
    )
    params.update(overrides)
    return HarvesterConfig(**params)


async def no_sleep(_: float) -> None:
    return None


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


# ── browser / extractor ──────────────────────────────────────────

class FakePage:
    def __init__(self, url: str) -> None:
        self.url = url


class FakeBrowser:
    """Navigates nowhere.  ``failures[url]`` makes the next N visits time out."""

    def __init__(self) -> None:
        self.failures: dict[str, int] = {}
        self.visits: list[str] = []
        self.restarts = 0
        self.aux_opened = 0
        self.aux_closed = 0

    @property
    def page(self) -> FakePage:
        return FakePage(self.visits[-1] if self.visits else "about:blank")

    async def goto(self, url: str, *, timeout: float | None = None) -> FakePage:
        self.visits.append(url)
        remaining = self.failures.get(url, 0)
        if remaining:
            self.failures[url] = remaining - 1
            raise NavigationTimeout(f"{url}: no load within {timeout}s")
        return FakePage(url)

    @asynccontextmanager
    async def auxiliary_page(self):
        self.aux_opened += 1
        try:
            yield FakePage("about:blank")
        finally:
            self.aux_closed += 1

    async def fetch(self, url: str, *, timeout: float | None = None) -> bytes:
        return b"fetched:" + url.encode()

    async def restart(self) -> None:
        self.restarts += 1


_THREAD_URL = re.compile(r"/t(\d+)/p(\d+)$")
_LISTING_URL = re.compile(r"/listing/p(\d+)$")


class FakeExtractor:
    """Serves posts from ``threads[thread_id][page_no - 1]`` and listing pages."""

    def __init__(self) -> None:
        self.threads: dict[int, list[list[ExtractedPost]]] = {}
        self.listing: list[list[ThreadSummary]] = []
        self.broken_urls: set[str] = set()

    def thread_page_url(self, thread: ForumThread, page_no: int) -> str:
        return f"https://forum.test/t{thread.thread_id}/p{page_no}"

    def listing_page_url(self, page_no: int) -> str:
        return f"https://forum.test/listing/p{page_no}"

    async def prepare(self, page: FakePage) -> None:
        return None

    async def extract_posts(self, page: FakePage) -> list[ExtractedPost]:
        if page.url in self.broken_urls:
            raise ValueError("unexpected markup")
        thread_id, page_no = map(int, _THREAD_URL.search(page.url).groups())
        return list(self.threads[thread_id][page_no - 1])

    async def extract_total_page_count(self, page: FakePage) -> int:
        listing = _LISTING_URL.search(page.url)
        if listing:
            return len(self.listing)
        thread_id = int(_THREAD_URL.search(page.url).group(1))
        return len(self.threads[thread_id])

    async def extract_thread_summaries(self, page: FakePage) -> list[ThreadSummary]:
        page_no = int(_LISTING_URL.search(page.url).group(1))
        return list(self.listing[page_no - 1])


class FakeHost:
    def __init__(self, browser: FakeBrowser | None = None) -> None:
        self.browser = browser
        self.browser_restarts = 0
        self.host_restarts = 0

    async def restart_browser_process(self) -> None:
        self.browser_restarts += 1
        if self.browser is not None:
            await self.browser.restart()

    async def restart_host(self) -> None:
        self.host_restarts += 1


# ── media ────────────────────────────────────────────────────────

class FakeFetcher:
    """``flaky[url]`` fails that many times first; ``broken`` always fails."""

    def __init__(self) -> None:
        self.flaky: dict[str, int] = {}
        self.broken: set[str] = set()
        self.calls: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    def ceiling_for(self, url: str) -> float:
        return 5.0

    async def resolve(self, url: str) -> bytes:
        self.calls.append(url)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if url in self.broken:
                raise AssetResolutionFailure(f"{url}: HTTP 404")
            if self.flaky.get(url, 0):
                self.flaky[url] -= 1
                raise AssetResolutionFailure(f"{url}: reset by peer")
            return b"bytes of " + url.encode()
        finally:
            self.in_flight -= 1


class FakeObjectStore:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str, dict[str, str]]] = {}
        self.fail_keys: set[str] = set()
        self.pruned: list[tuple[str, list[str]]] = []

    def put(self, key, data, content_type, metadata=None) -> str:
        if key in self.fail_keys:
            raise StorageWriteFailure(f"put {key}: access denied")
        self.objects[key] = (data, content_type, dict(metadata or {}))
        return f"https://cdn.test/{key}"

    def prune(self, prefix, keep) -> int:
        keep = set(keep)
        stale = [k for k in self.objects if k.startswith(prefix) and k not in keep]
        for key in stale:
            del self.objects[key]
        self.pruned.append((prefix, sorted(keep)))
        return len(stale)


# ── builders ─────────────────────────────────────────────────────

def post(post_id: int, *urls: str | tuple[str, str], content: str = "") -> ExtractedPost:
    refs = []
    for url in urls:
        if isinstance(url, tuple):
            refs.append(MediaReference(full_url=url[0], thumb_url=url[1]))
        else:
            refs.append(MediaReference(full_url=url))
    return ExtractedPost(
        post_id=post_id,
        author=f"user{post_id}",
        content=content or f"post {post_id}",
        created_at=at(post_id % 60),
        likes=post_id % 7,
        media=refs,
    )


@pytest.fixture
def cfg() -> HarvesterConfig:
    return make_config()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()
