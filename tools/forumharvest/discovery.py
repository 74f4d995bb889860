"""Thread discovery – read the forum listing and record thread activity."""

from __future__ import annotations

import logging

from .config import HarvesterConfig
from .errors import ExtractionFailure, RetryExhausted
from .interfaces import Browsing, PageExtractor, PersistenceGateway
from .models import ThreadSummary
from .retry import Pacer, RetryPolicy

logger = logging.getLogger("forumharvest.discovery")


class ThreadIndexScanner:
    """Walk listing pages newest-first, upserting each thread's metadata.

    Upserting raises a thread's last activity time, which is what makes it
    eligible for the next worker pass.
    """

    def __init__(
        self,
        cfg: HarvesterConfig,
        browser: Browsing,
        extractor: PageExtractor,
        store: PersistenceGateway,
        *,
        retry: RetryPolicy | None = None,
        pacer: Pacer | None = None,
    ) -> None:
        self.cfg = cfg
        self.browser = browser
        self.extractor = extractor
        self.store = store
        self.retry = retry or RetryPolicy(cfg.crawl.page_attempts, cfg.pipeline.base_delay)
        self.pacer = pacer or Pacer(cfg.crawl.listing_pacing)
        self.stats = {"pages": 0, "threads": 0, "new": 0, "failed_pages": 0}

    async def _load(self, page_no: int) -> tuple[list[ThreadSummary], int]:
        url = self.extractor.listing_page_url(page_no)

        async def attempt() -> tuple[list[ThreadSummary], int]:
            page = await self.browser.goto(url, timeout=self.cfg.crawl.navigation_timeout)
            await self.extractor.prepare(page)
            summaries = await self.extractor.extract_thread_summaries(page)
            if not summaries:
                raise ExtractionFailure(f"{url}: no threads listed")
            return summaries, await self.extractor.extract_total_page_count(page)

        return await self.retry.run(attempt, description=f"listing page {page_no}")

    def _is_caught_up(self, summary: ThreadSummary) -> bool:
        if summary.last_activity_at is None:
            return False
        known = self.store.get_thread(summary.thread_id)
        return known is not None and known.last_activity_at == summary.last_activity_at

    async def scan(self, *, full: bool = False, max_pages: int = 0) -> int:
        """Scan the listing; returns how many threads were upserted.

        Incremental scans stop at the first thread whose stored activity time
        matches the listing, since everything after it is older.
        """
        page_no, total = 1, 1
        while page_no <= total:
            if max_pages > 0 and page_no > max_pages:
                break
            await self.pacer.wait()
            try:
                summaries, listed_total = await self._load(page_no)
            except RetryExhausted as exc:
                logger.warning("Skipping listing page %d: %s", page_no, exc)
                self.stats["failed_pages"] += 1
                page_no += 1
                continue
            total = max(total, listed_total)
            self.stats["pages"] += 1

            caught_up = False
            for summary in summaries:
                if not full and self._is_caught_up(summary):
                    caught_up = True
                    break
                if self.store.get_thread(summary.thread_id) is None:
                    self.stats["new"] += 1
                self.store.upsert_thread(summary)
                self.stats["threads"] += 1
            self.store.commit()
            logger.info("Listing page %d/%d done (%d thread(s) so far)", page_no, total, self.stats["threads"])

            if caught_up:
                logger.info("Caught up at listing page %d", page_no)
                break
            page_no += 1
        return self.stats["threads"]
