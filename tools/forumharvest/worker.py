"""Worker – wires the browser, stores, pipeline and guardian into one process."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .browser import BrowserSession
from .config import HarvesterConfig
from .db import Database
from .discovery import ThreadIndexScanner
from .errors import HarvesterError
from .fetcher import AssetFetcher
from .guardian import ProcessHostControl, ResourceGuardian
from .memstore import InMemoryStore
from .models import ForumThread
from .orchestrator import CrawlOrchestrator, ThreadOutcome
from .pipeline import MediaPipeline
from .session import CookieSessionProvider
from .storage import StorageService
from .xenforo import XenForoExtractor

logger = logging.getLogger("forumharvest.worker")


class Worker:
    """One harvesting process.  Use as ``async with Worker(cfg) as w: ...``.

    Dry runs keep every write in memory and store no media.
    """

    def __init__(
        self,
        cfg: HarvesterConfig,
        *,
        store: Database | InMemoryStore | None = None,
        show_progress: bool = True,
    ) -> None:
        self.cfg = cfg
        self.store = store or (InMemoryStore() if cfg.dry_run else Database(cfg.db))
        self.browser = BrowserSession(
            cfg.browser,
            cfg.site,
            CookieSessionProvider(cfg.site),
            navigation_timeout=cfg.crawl.navigation_timeout,
        )
        self.extractor = XenForoExtractor(cfg.site, selector_timeout=cfg.pipeline.selector_timeout)
        self.guardian = ResourceGuardian(
            cfg.guardian,
            ProcessHostControl(self.browser, cfg.guardian),
            pages_before_recycle=cfg.crawl.pages_before_recycle,
        )
        self.storage: StorageService | None = None
        self.fetcher: AssetFetcher | None = None
        self.pipeline: MediaPipeline | None = None
        if cfg.download_media and not cfg.dry_run:
            self.storage = StorageService(cfg.s3)
            self.fetcher = AssetFetcher(cfg.pipeline, cfg.site, self.browser)
            self.pipeline = MediaPipeline(cfg.pipeline, self.fetcher, self.storage)
        self.orchestrator = CrawlOrchestrator(
            cfg, self.browser, self.extractor, self.store, self.guardian, self.pipeline,
            show_progress=show_progress,
        )
        self.scanner = ThreadIndexScanner(cfg, self.browser, self.extractor, self.store)

    # ── lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        await self.browser.start()
        self.guardian.start()

    async def close(self) -> None:
        try:
            await self.guardian.stop()
        finally:
            if self.fetcher is not None:
                await self.fetcher.close()
            await self.browser.close()
            if self.storage is not None:
                self.storage.close()
            self.store.close()

    async def __aenter__(self) -> Worker:
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ── actions ──────────────────────────────────────────────────

    async def run_pass(self, limit: int = 0) -> list[ThreadOutcome]:
        return await self.orchestrator.run_pass(limit)

    async def watch(self, idle: float, limit: int = 0) -> None:
        """Repeat passes forever, sleeping ``idle`` seconds between them."""
        passes = 0
        while True:
            await self.run_pass(limit)
            passes += 1
            self.guardian.raise_if_exhausted()
            logger.info("Pass %d done; next pass in %.0fs", passes, idle)
            await asyncio.sleep(idle)

    async def sync_thread(self, thread_id: int) -> ThreadOutcome:
        """Sync one thread whether or not this worker owns it."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise HarvesterError(f"thread {thread_id} is unknown; run discover first")
        return await self.orchestrator.sync_thread(thread)

    async def discover(self, *, full: bool = False, max_pages: int = 0) -> int:
        return await self.scanner.scan(full=full, max_pages=max_pages)

    @property
    def stats(self) -> dict[str, Any]:
        merged: dict[str, Any] = dict(self.orchestrator.stats)
        if self.pipeline is not None:
            merged.update({f"media_{k}": v for k, v in self.pipeline.stats.items()})
        merged["recycles"] = self.guardian.stats["recycles"]
        return merged


def seed_dry_run_store(cfg: HarvesterConfig, thread_id: int | None = None) -> InMemoryStore:
    """Copy the threads a dry run will touch out of the database, read-only."""
    store = InMemoryStore()
    with Database(cfg.db) as db:
        if thread_id is not None:
            found = db.get_thread(thread_id)
            threads: list[ForumThread] = [found] if found else []
        else:
            threads = db.find_threads_needing_sync(cfg.partition.owns)
    for thread in threads:
        store.add_thread(thread)
    logger.info("Dry run: loaded %d thread(s) into memory", len(threads))
    return store
