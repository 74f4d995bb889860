"""Crawl orchestration – walk each owned thread page by page, checkpointing as we go."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from .config import HarvesterConfig
from .errors import ExtractionFailure, HarvesterError, MemoryExhaustion
from .guardian import ResourceGuardian
from .interfaces import Browsing, PageExtractor, PersistenceGateway
from .models import MEDIA_TYPES, ExtractedPost, ForumThread, StoredMedia
from .pipeline import MediaPipeline
from .retry import Pacer

logger = logging.getLogger("forumharvest.core")


class ThreadState(enum.Enum):
    IDLE = "idle"
    PAGINATING = "paginating"
    ADVANCING = "advancing"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    COMPLETED = "completed"


@dataclass
class ThreadOutcome:
    thread_id: int
    start_page: int
    state: ThreadState = ThreadState.IDLE
    last_page: int | None = None  # last page completed in this run
    total_pages: int | None = None
    pages_scraped: int = 0


def resume_page(thread: ForumThread) -> int:
    """First page to scrape for ``thread``.

    An interrupted first sync picks up after its last completed page.  A
    thread that was fully synced and has new activity re-reads its last page,
    which is where new replies land.
    """
    last = thread.last_synced_page
    if not last or last < 1:
        return 1
    if thread.synced_through_at is not None:
        return last
    return last + 1


class CrawlOrchestrator:
    """Drives one worker's partition through the browser, one page at a time."""

    def __init__(
        self,
        cfg: HarvesterConfig,
        browser: Browsing,
        extractor: PageExtractor,
        store: PersistenceGateway,
        guardian: ResourceGuardian,
        pipeline: MediaPipeline | None = None,
        *,
        pacer: Pacer | None = None,
        show_progress: bool = False,
    ) -> None:
        self.cfg = cfg
        self.partition = cfg.partition
        self.browser = browser
        self.extractor = extractor
        self.store = store
        self.guardian = guardian
        self.pipeline = pipeline if cfg.download_media else None
        self.pacer = pacer or Pacer(cfg.crawl.thread_pacing)
        self.show_progress = show_progress
        # Stats
        self.stats = {
            "threads": 0, "completed": 0, "abandoned": 0, "pages": 0,
            "posts": 0, "media": 0, "page_retries": 0, "errors": 0,
        }

    # ── worker pass ──────────────────────────────────────────────

    async def run_pass(self, limit: int = 0) -> list[ThreadOutcome]:
        """Sync every thread this worker owns that has unsynced activity.

        If limit > 0, stops after that many threads.
        """
        threads = self.store.find_threads_needing_sync(self.partition.owns)
        if limit > 0:
            threads = threads[:limit]
        logger.info("%s: %d thread(s) need sync", self.partition, len(threads))

        outcomes: list[ThreadOutcome] = []
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            disable=not self.show_progress,
        ) as progress:
            task = progress.add_task(f"{self.partition} threads", total=len(threads))
            for thread in threads:
                self.guardian.raise_if_exhausted()
                await self.pacer.wait()
                try:
                    outcomes.append(await self.sync_thread(thread))
                except MemoryExhaustion:
                    raise
                except Exception as exc:
                    logger.error("Error syncing thread %d: %s", thread.thread_id, exc)
                    self.stats["errors"] += 1
                    self.store.rollback()
                progress.advance(task)

        logger.info(
            "%s pass complete: %d completed, %d abandoned, %d error(s)",
            self.partition, self.stats["completed"], self.stats["abandoned"], self.stats["errors"],
        )
        return outcomes

    # ── thread state machine ─────────────────────────────────────

    async def sync_thread(self, thread: ForumThread) -> ThreadOutcome:
        outcome = ThreadOutcome(thread.thread_id, start_page=resume_page(thread))
        self.stats["threads"] += 1
        page_no = outcome.start_page
        logger.info("Syncing thread %d from page %d", thread.thread_id, page_no)

        while True:
            outcome.state = ThreadState.PAGINATING
            total = await self._scrape_with_retries(thread, page_no, outcome)
            if total is None:
                outcome.state = ThreadState.EXHAUSTED
                self.stats["abandoned"] += 1
                logger.warning(
                    "Abandoning thread %d at page %d; it resumes there next run",
                    thread.thread_id, page_no,
                )
                return outcome
            if page_no > total:
                logger.info(
                    "Thread %d has %d page(s); re-reading page %d instead of %d",
                    thread.thread_id, total, total, page_no,
                )
                page_no = total
                continue
            outcome.total_pages = total
            outcome.last_page = page_no
            outcome.pages_scraped += 1
            if page_no >= total:
                break
            await self._between_pages()
            outcome.state = ThreadState.ADVANCING
            page_no += 1

        # the last page's commit already carried synced_through_at
        outcome.state = ThreadState.COMPLETED
        self.stats["completed"] += 1
        logger.info("Thread %d fully synced (%d page(s))", thread.thread_id, page_no)
        await self._between_pages()
        return outcome

    async def _scrape_with_retries(
        self, thread: ForumThread, page_no: int, outcome: ThreadOutcome
    ) -> int | None:
        """Scrape one page, recycling the browser before each retry.  None when all attempts fail."""
        attempts = max(1, self.cfg.crawl.page_attempts)
        for attempt in range(1, attempts + 1):
            try:
                if attempt > 1:
                    outcome.state = ThreadState.RETRYING
                    self.stats["page_retries"] += 1
                    await self.guardian.recycle(
                        f"retry {attempt}/{attempts} of thread {thread.thread_id} page {page_no}"
                    )
                return await self._scrape_page(thread, page_no)
            except HarvesterError as exc:
                self.store.rollback()
                logger.warning(
                    "Thread %d page %d attempt %d/%d failed: %s",
                    thread.thread_id, page_no, attempt, attempts, exc,
                )
        return None

    async def _scrape_page(self, thread: ForumThread, page_no: int) -> int:
        """Fetch, ingest and persist one page.  Returns the thread's page count.

        A page past the end of the thread is not persisted; the caller sees a
        count below ``page_no`` and moves back.  The last page's checkpoint
        also marks the thread synced, in the same commit.
        """
        url = self.extractor.thread_page_url(thread, page_no)
        page = await self.browser.goto(url, timeout=self.cfg.crawl.navigation_timeout)
        try:
            await self.extractor.prepare(page)
            total = await self.extractor.extract_total_page_count(page)
            if isinstance(total, int) and 0 < total < page_no:
                return total
            posts = await self.extractor.extract_posts(page)
        except HarvesterError:
            raise
        except Exception as exc:
            raise ExtractionFailure(f"{url}: {exc}") from exc
        if not isinstance(total, int) or total < 1:
            raise ExtractionFailure(f"{url}: bad page count {total!r}")
        if not posts:
            raise ExtractionFailure(f"{url}: no posts found")

        stored: dict[int, list[StoredMedia]] = {}
        if self.pipeline is not None:
            stored = await self.pipeline.ingest(thread.thread_id, posts)

        synced_through = None
        if page_no >= total:
            synced_through = thread.last_activity_at or datetime.now(timezone.utc)
        self._persist_page(thread.thread_id, posts, stored)
        self.store.update_checkpoint(thread.thread_id, page_no, synced_through)
        self.store.commit()
        if self.pipeline is not None:
            await self.pipeline.prune_pending()

        media_count = sum(len(v) for v in stored.values())
        self.stats["pages"] += 1
        self.stats["posts"] += len(posts)
        self.stats["media"] += media_count
        logger.info(
            "Thread %d page %d/%d: %d post(s), %d media",
            thread.thread_id, page_no, total, len(posts), media_count,
        )
        return total

    def _persist_page(
        self, thread_id: int, posts: list[ExtractedPost], stored: dict[int, list[StoredMedia]]
    ) -> None:
        for post in posts:
            self.store.upsert_post(thread_id, post)
            if self.pipeline is None:
                continue
            assets = stored.get(post.post_id, [])
            for media_type in MEDIA_TYPES:
                self.store.replace_post_media(
                    thread_id, post.post_id, media_type,
                    [a for a in assets if a.media_type == media_type],
                )

    async def _between_pages(self) -> None:
        self.guardian.on_checkpoint()
        self.guardian.raise_if_exhausted()
        if self.guardian.should_recycle():
            try:
                await self.guardian.recycle("page budget reached")
            except HarvesterError as exc:
                logger.error("Scheduled browser recycle failed: %s", exc)
