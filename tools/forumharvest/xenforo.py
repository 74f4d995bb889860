"""Page extraction for XenForo forums.

The in-page scripts only collect raw strings; everything that needs parsing
(ids, counts, dates, URL resolution, dedup) happens in Python so it can be
tested without a browser.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from .config import SiteConfig
from .errors import ExtractionFailure
from .media import dedupe_references
from .models import ExtractedPost, ForumThread, MediaReference, ThreadSummary

logger = logging.getLogger("forumharvest.xenforo")

CONTENT_SELECTOR = ".message, .structItem"

POSTS_JS = r"""
() => {
  const skip = (src) => /avatar|smiley|smilie|icon/i.test(src);
  const out = [];
  for (const el of document.querySelectorAll(".message")) {
    const article = el.closest("article[data-content]");
    const text = (sel) => (el.querySelector(sel)?.textContent || "").trim();
    const medias = [];
    for (const link of el.querySelectorAll('.message-attachments a[href*="/attachments/"]')) {
      const img = link.querySelector("img[src]");
      medias.push([link.getAttribute("href") || "", img ? img.getAttribute("src") || "" : ""]);
    }
    for (const img of el.querySelectorAll(".message-content img[src], .message-content img[data-src]")) {
      if (img.closest(".message-attachments")) continue;
      const src = img.getAttribute("src") || img.getAttribute("data-src") || "";
      if (src && !skip(src)) medias.push([src, ""]);
    }
    for (const v of el.querySelectorAll(".message-content video source, .message-content video[src]")) {
      const src = v.getAttribute("src");
      if (src) medias.push([src, ""]);
    }
    out.push({
      dataContent: article ? article.getAttribute("data-content") : null,
      lbId: el.getAttribute("data-lb-id"),
      elementId: el.id || null,
      author: text(".message-userDetails .username"),
      content: text(".message-content .bbWrapper"),
      created: el.querySelector("time.u-dt[datetime]")?.getAttribute("datetime") || "",
      reactions: el.querySelector('.reactionsBar-link[href*="/reactions"]')?.textContent || "",
      medias,
    });
  }
  return out;
}
"""

LAST_PAGE_JS = r"""
() => document.querySelector(".pageNav-main li:last-child a")?.getAttribute("href") || ""
"""

THREADS_JS = r"""
() => {
  const items = document.querySelectorAll(
    ".structItemContainer-group:not(.structItemContainer-group--sticky) .structItem"
  );
  const out = [];
  for (const el of items) {
    const title = el.querySelector(".structItem-title a:last-of-type");
    const text = (sel) => (el.querySelector(sel)?.textContent || "").trim();
    out.push({
      threadId: el.getAttribute("data-thread-id")
        || (el.className.match(/js-threadListItem-(\d+)/) || [])[1] || "",
      title: (title?.textContent || "").trim(),
      url: title?.getAttribute("href") || "",
      creator: text(".structItem-minor .username"),
      created: el.querySelector(".structItem-minor time")?.getAttribute("datetime") || "",
      replies: text(".structItem-cell--meta dl:nth-child(1) dd"),
      views: text(".structItem-cell--meta dl:nth-child(2) dd"),
      latest: el.querySelector(".structItem-cell--latest time")?.getAttribute("datetime") || "",
      lastReplier: text(".structItem-cell--latest .username"),
    });
  }
  return out;
}
"""

_POST_ID_RES = (
    ("dataContent", re.compile(r"post-(\d+)")),
    ("lbId", re.compile(r"^(\d+)$")),
    ("elementId", re.compile(r"js-post-(\d+)")),
)
_PAGE_RE = re.compile(r"page-(\d+)/?$")
_OTHERS_RE = re.compile(r"\band\s+([\d.,]+[kKmM]?)\s+others?\b", re.I)
_NAME_SPLIT_RE = re.compile(r",|\band\b")
_COUNT_RE = re.compile(r"([\d][\d.,]*)\s*([kKmMbB])?")
_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}
_TZ_RE = re.compile(r"([+-]\d{2})(\d{2})$")


# ── parsing helpers ──────────────────────────────────────────────

def parse_count(text: str | None) -> int:
    """``"1,234"`` → 1234, ``"1.2K"`` → 1200, ``"3M"`` → 3000000, junk → 0."""
    match = _COUNT_RE.search(text or "")
    if not match:
        return 0
    number, suffix = match.groups()
    try:
        value = float(number.replace(",", ""))
    except ValueError:
        return 0
    if suffix:
        value *= _MULTIPLIERS[suffix.lower()]
    return int(round(value))


def parse_reaction_count(text: str | None) -> int:
    """Approximate reaction count from a reactions bar.

    ``"Alice, Bob and 3 others"`` → 5, ``"Alice and Bob"`` → 2.
    """
    text = " ".join((text or "").split())
    if not text:
        return 0
    others = _OTHERS_RE.search(text)
    if others:
        named = [p for p in text[:others.start()].split(",") if p.strip()]
        return len(named) + parse_count(others.group(1))
    return len([p for p in _NAME_SPLIT_RE.split(text) if p.strip()])


def parse_datetime(value: str | None) -> datetime | None:
    """ISO-8601 as XenForo writes it (``2024-01-24T19:34:34-0500``).  Naive → UTC."""
    if not value:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    for candidate in (value, _TZ_RE.sub(r"\1:\2", value)):
        try:
            dt = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def parse_post_id(raw: dict[str, Any]) -> int:
    for field_name, pattern in _POST_ID_RES:
        value = raw.get(field_name)
        if not value:
            continue
        match = pattern.search(str(value))
        if match:
            return int(match.group(1))
    return 0


def page_count_from_href(href: str | None) -> int:
    match = _PAGE_RE.search(href or "")
    return int(match.group(1)) if match else 1


def posts_from_raw(raw: Any, base_url: str) -> list[ExtractedPost]:
    if not isinstance(raw, list):
        raise ExtractionFailure(f"expected a list of posts, got {type(raw).__name__}")
    posts: list[ExtractedPost] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ExtractionFailure(f"malformed post record: {item!r}")
        post_id = parse_post_id(item)
        if not post_id:
            logger.debug("Skipping message without a post id")
            continue
        refs = [
            MediaReference(
                full_url=urljoin(base_url, full) if full else "",
                thumb_url=urljoin(base_url, thumb) if thumb else "",
            )
            for full, thumb in item.get("medias") or []
        ]
        posts.append(ExtractedPost(
            post_id=post_id,
            author=item.get("author") or "",
            content=item.get("content") or "",
            created_at=parse_datetime(item.get("created")),
            likes=parse_reaction_count(item.get("reactions")),
            media=dedupe_references(refs),
        ))
    return posts


def summaries_from_raw(raw: Any, base_url: str) -> list[ThreadSummary]:
    if not isinstance(raw, list):
        raise ExtractionFailure(f"expected a list of threads, got {type(raw).__name__}")
    summaries: list[ThreadSummary] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ExtractionFailure(f"malformed thread record: {item!r}")
        try:
            thread_id = int(str(item.get("threadId") or "0"))
        except ValueError:
            thread_id = 0
        if thread_id <= 0:
            continue
        url = item.get("url") or ""
        summaries.append(ThreadSummary(
            thread_id=thread_id,
            title=item.get("title") or "",
            creator=item.get("creator") or "",
            created_at=parse_datetime(item.get("created")),
            replies=parse_count(item.get("replies")),
            views=parse_count(item.get("views")),
            url=urljoin(base_url, url) if url else "",
            last_replier=item.get("lastReplier") or "",
            last_activity_at=parse_datetime(item.get("latest")),
        ))
    return summaries


# ── adapter ──────────────────────────────────────────────────────

class XenForoExtractor:
    """Page extraction adapter for XenForo thread and forum listing pages."""

    def __init__(self, site: SiteConfig, *, selector_timeout: float = 10.0) -> None:
        self.site = site
        self.base_url = site.site_url.rstrip("/") + "/"
        self.selector_timeout = selector_timeout

    def thread_page_url(self, thread: ForumThread, page_no: int) -> str:
        url = thread.url or f"threads/{thread.thread_id}/"
        url = urljoin(self.base_url, url).split("#", 1)[0]
        url = re.sub(r"(unread|latest)/?$", "", url)
        url = _PAGE_RE.sub("", url)
        if not url.endswith("/"):
            url += "/"
        return url if page_no <= 1 else f"{url}page-{page_no}"

    def listing_page_url(self, page_no: int) -> str:
        url = self.site.forum_url
        if not url.endswith("/"):
            url += "/"
        return url if page_no <= 1 else f"{url}page-{page_no}"

    async def prepare(self, page: Any) -> None:
        try:
            await page.wait_for_selector(CONTENT_SELECTOR, timeout=self.selector_timeout * 1000)
        except PlaywrightTimeoutError:
            logger.debug("No posts or threads rendered on %s", page.url)

    async def _evaluate(self, page: Any, script: str) -> Any:
        try:
            return await page.evaluate(script)
        except PlaywrightError as exc:
            raise ExtractionFailure(f"{page.url}: {exc}") from exc

    async def extract_posts(self, page: Any) -> list[ExtractedPost]:
        return posts_from_raw(await self._evaluate(page, POSTS_JS), self.base_url)

    async def extract_total_page_count(self, page: Any) -> int:
        return page_count_from_href(await self._evaluate(page, LAST_PAGE_JS))

    async def extract_thread_summaries(self, page: Any) -> list[ThreadSummary]:
        return summaries_from_raw(await self._evaluate(page, THREADS_JS), self.base_url)
