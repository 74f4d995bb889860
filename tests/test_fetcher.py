"""Tests for asset resolution."""

from contextlib import asynccontextmanager

import httpx
import pytest

from forumharvest.config import PipelineConfig, SiteConfig
from forumharvest.errors import AssetResolutionFailure
from forumharvest.fetcher import FIND_ASSET_JS, AssetFetcher

from conftest import FakeBrowser

DIRECT = "https://img.test/data/a.png"
ATTACHMENT = "https://forum.test/attachments/clip-mp4.77/"
PCFG = PipelineConfig(attempt_timeout=5.0, direct_ceiling=20.0, indirect_ceiling=90.0)


def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/data/a.png":
        return httpx.Response(200, content=b"\x89PNG...")
    if request.url.path == "/data/empty.png":
        return httpx.Response(200, content=b"")
    return httpx.Response(404)


def make_fetcher(browser=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AssetFetcher(PCFG, SiteConfig(), browser, client=client)


class FakeResponse:
    def __init__(self, status=200, body=b""):
        self.status = status
        self.ok = 200 <= status < 300
        self._body = body

    async def body(self):
        return self._body


class AttachmentPage:
    def __init__(self, direct, response):
        self.direct = direct
        self.response = response
        self.visited = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        return self.response

    async def wait_for_selector(self, selector, timeout=None):
        return None

    async def evaluate(self, script):
        assert script == FIND_ASSET_JS
        return self.direct


class AttachmentBrowser(FakeBrowser):
    def __init__(self, page):
        super().__init__()
        self.attachment_page = page
        self.fetched = []

    @asynccontextmanager
    async def auxiliary_page(self):
        self.aux_opened += 1
        try:
            yield self.attachment_page
        finally:
            self.aux_closed += 1

    async def fetch(self, url, *, timeout=None):
        self.fetched.append(url)
        return b"video bytes"


class TestDirect:
    @pytest.mark.asyncio
    async def test_fetches_bytes(self):
        async with make_fetcher() as fetcher:
            assert await fetcher.resolve(DIRECT) == b"\x89PNG..."

    @pytest.mark.asyncio
    async def test_http_error(self):
        async with make_fetcher() as fetcher:
            with pytest.raises(AssetResolutionFailure, match="404"):
                await fetcher.resolve("https://img.test/data/missing.png")

    @pytest.mark.asyncio
    async def test_empty_body(self):
        async with make_fetcher() as fetcher:
            with pytest.raises(AssetResolutionFailure, match="empty body"):
                await fetcher.resolve("https://img.test/data/empty.png")

    def test_ceilings(self):
        fetcher = make_fetcher()
        assert fetcher.ceiling_for(DIRECT) == 20.0
        assert fetcher.ceiling_for(ATTACHMENT) == 90.0


class TestAttachment:
    @pytest.mark.asyncio
    async def test_needs_a_browser(self):
        async with make_fetcher() as fetcher:
            with pytest.raises(AssetResolutionFailure, match="browser"):
                await fetcher.resolve(ATTACHMENT)

    @pytest.mark.asyncio
    async def test_reads_asset_url_from_page(self):
        page = AttachmentPage("https://forum.test/data/video/77.mp4", FakeResponse(200))
        browser = AttachmentBrowser(page)
        async with make_fetcher(browser) as fetcher:
            assert await fetcher.resolve(ATTACHMENT) == b"video bytes"
        assert page.visited == [ATTACHMENT]
        assert browser.fetched == ["https://forum.test/data/video/77.mp4"]
        assert browser.aux_opened == browser.aux_closed == 1

    @pytest.mark.asyncio
    async def test_page_that_served_the_asset_itself(self):
        page = AttachmentPage(None, FakeResponse(200, b"raw asset"))
        async with make_fetcher(AttachmentBrowser(page)) as fetcher:
            assert await fetcher.resolve(ATTACHMENT) == b"raw asset"

    @pytest.mark.asyncio
    async def test_error_page(self):
        page = AttachmentPage(None, FakeResponse(403))
        browser = AttachmentBrowser(page)
        async with make_fetcher(browser) as fetcher:
            with pytest.raises(AssetResolutionFailure, match="403"):
                await fetcher.resolve(ATTACHMENT)
        assert browser.aux_closed == 1
