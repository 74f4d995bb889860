"""Asset resolution – turn a media URL into bytes.

Direct URLs are fetched over HTTP.  Attachment pages (URLs that name a format
but carry no extension) are rendered in an auxiliary browser page first, and
the real asset URL is read from the DOM.
"""

from __future__ import annotations

import logging

import httpx
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from .config import PipelineConfig, SiteConfig
from .errors import AssetResolutionFailure
from .interfaces import Browsing
from .media import is_indirect_reference

logger = logging.getLogger("forumharvest.fetcher")

MEDIA_SELECTOR = "img, video"

# Evaluated inside the attachment page.  Prefers video sources, then the
# largest non-decorative image, then a same-origin link to a media file.
FIND_ASSET_JS = r"""
() => {
  const skip = /avatar|smilie|smiley|icon|logo/i;
  const sources = Array.from(document.querySelectorAll("video source[src], video[src]"));
  for (const el of sources) {
    if (el.src) return el.src;
  }
  let best = null;
  let bestArea = -1;
  for (const img of Array.from(document.querySelectorAll("img[src]"))) {
    if (!img.src || skip.test(img.src)) continue;
    const area = (img.naturalWidth || 0) * (img.naturalHeight || 0);
    if (area > bestArea) { best = img.src; bestArea = area; }
  }
  if (best) return best;
  const ext = /\.(jpe?g|png|gif|bmp|webp|svg|mp4|webm|mov|avi|mkv|wmv|flv|m4v)(\?|$)/i;
  for (const a of Array.from(document.querySelectorAll("a[href]"))) {
    if (a.origin === location.origin && ext.test(a.pathname)) return a.href;
  }
  return null;
}
"""


class AssetFetcher:
    """Resolve media URLs to bytes.  One attempt per call; retries live in the pipeline."""

    def __init__(
        self,
        cfg: PipelineConfig,
        site: SiteConfig,
        browser: Browsing | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cfg = cfg
        self.browser = browser
        self._client = client or httpx.AsyncClient(
            timeout=cfg.attempt_timeout,
            headers={"User-Agent": site.user_agent},
            follow_redirects=True,
            verify=cfg.verify_tls,
        )

    def ceiling_for(self, url: str) -> float:
        """Wall-clock budget for resolving ``url`` across all retries."""
        if is_indirect_reference(url):
            return self.cfg.indirect_ceiling
        return self.cfg.direct_ceiling

    async def resolve(self, url: str) -> bytes:
        if is_indirect_reference(url):
            return await self.resolve_attachment(url)
        return await self.fetch_direct(url)

    async def fetch_direct(self, url: str) -> bytes:
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise AssetResolutionFailure(f"{url}: {exc}") from exc
        if not resp.content:
            raise AssetResolutionFailure(f"{url}: empty body")
        return resp.content

    async def resolve_attachment(self, url: str) -> bytes:
        if self.browser is None:
            raise AssetResolutionFailure(f"{url}: attachment page needs a browser session")
        async with self.browser.auxiliary_page() as page:
            try:
                response = await page.goto(
                    url, wait_until="networkidle", timeout=self.cfg.attempt_timeout * 1000
                )
            except PlaywrightError as exc:
                raise AssetResolutionFailure(f"{url}: {exc}") from exc
            try:
                await page.wait_for_selector(MEDIA_SELECTOR, timeout=self.cfg.selector_timeout * 1000)
            except PlaywrightTimeoutError:
                logger.debug("No media element appeared on %s", url)
            try:
                direct = await page.evaluate(FIND_ASSET_JS)
            except PlaywrightError as exc:
                logger.debug("Asset lookup failed on %s: %s", url, exc)
                direct = None

            if direct:
                logger.debug("Attachment %s resolved to %s", url, direct)
                return await self.browser.fetch(direct, timeout=self.cfg.attempt_timeout)

            # The attachment URL may have served the asset itself.
            if response is None or not response.ok:
                status = response.status if response is not None else "no response"
                raise AssetResolutionFailure(f"{url}: attachment page returned {status}")
            try:
                return await response.body()
            except PlaywrightError as exc:
                raise AssetResolutionFailure(f"{url}: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AssetFetcher:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
