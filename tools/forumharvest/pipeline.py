"""Media ingestion – resolve → store, in bounded streaming sub-batches."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Sequence
from urllib.parse import quote

from .config import PipelineConfig
from .errors import AssetResolutionFailure, HarvesterError, RetryExhausted, StorageWriteFailure
from .interfaces import AssetResolver, ObjectStore
from .media import (
    dedupe_references,
    derive_key,
    extract_extension,
    is_indirect_reference,
    media_type,
    post_prefix,
)
from .models import IMAGE, ExtractedPost, StoredMedia, UploadTask
from .retry import RetryPolicy
from .storage import guess_mime

logger = logging.getLogger("forumharvest.pipeline")


def _key_extension(key: str) -> str:
    dot = key.rfind(".")
    return key[dot:] if dot > key.rfind("/") else ""


class MediaPipeline:
    """Turn the media references of a page's posts into stored objects.

    Tasks run ``batch_size`` at a time; a sub-batch is fully awaited, and its
    buffers released, before the next one starts.  Failed tasks are logged,
    counted and left out of the result, so a post keeps whatever succeeded.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        fetcher: AssetResolver,
        store: ObjectStore,
        *,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.cfg = cfg
        self.fetcher = fetcher
        self.store = store
        self.retry = retry or RetryPolicy(cfg.max_attempts, cfg.base_delay, cfg.attempt_timeout)
        self.stats = {"stored": 0, "thumbnails": 0, "failed": 0, "pruned": 0}
        self._pending_prunes: list[tuple[int, int, list[str]]] = []

    # ── planning ─────────────────────────────────────────────────

    def build_tasks(self, thread_id: int, posts: Sequence[ExtractedPost]) -> list[UploadTask]:
        """One task per non-empty URL of every deduplicated reference.

        A thumb-only reference is stored as the primary rendition.
        """
        tasks: list[UploadTask] = []
        for post in posts:
            for seq, ref in enumerate(dedupe_references(post.media)):
                primary = ref.primary_url
                paired = bool(ref.full_url and ref.thumb_url)
                tasks.append(UploadTask(
                    post_id=post.post_id,
                    sequence=seq,
                    source_url=primary,
                    key=derive_key(
                        thread_id, post.post_id, seq, extract_extension(primary), False, primary
                    ),
                    paired=paired,
                ))
                if paired:
                    tasks.append(UploadTask(
                        post_id=post.post_id,
                        sequence=seq,
                        source_url=ref.thumb_url,
                        key=derive_key(
                            thread_id, post.post_id, seq,
                            extract_extension(ref.thumb_url), True, primary,
                        ),
                        is_thumbnail=True,
                        paired=True,
                    ))
        return tasks

    # ── execution ────────────────────────────────────────────────

    async def ingest(
        self, thread_id: int, posts: Sequence[ExtractedPost]
    ) -> dict[int, list[StoredMedia]]:
        """Store every post's media; returns post id → stored full-size assets.

        Every post in ``posts`` gets an entry, possibly empty.  Stale objects
        are only queued here; :meth:`prune_pending` deletes them.
        """
        tasks = self.build_tasks(thread_id, posts)
        links: dict[str, str] = {}  # task key → public URL
        failed_posts: set[int] = set()

        size = max(1, self.cfg.batch_size)
        for start in range(0, len(tasks), size):
            batch = tasks[start:start + size]
            results = await asyncio.gather(
                *(self._run_task(thread_id, task) for task in batch),
                return_exceptions=True,
            )
            for task, result in zip(batch, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self.stats["failed"] += 1
                    failed_posts.add(task.post_id)
                    logger.warning(
                        "Media %s for post %d skipped after %d attempt(s): %s",
                        task.source_url, task.post_id, task.attempts, result,
                    )
                    continue
                links[task.key] = result
                if task.is_thumbnail:
                    self.stats["thumbnails"] += 1
                else:
                    self.stats["stored"] += 1

        self._pending_prunes = []
        if self.cfg.prune_stale_objects:
            self._pending_prunes = [
                (thread_id, post.post_id, [t.key for t in tasks if t.post_id == post.post_id])
                for post in posts
                if post.post_id not in failed_posts
            ]
        return self._collect(tasks, links, posts)

    async def prune_pending(self) -> None:
        """Delete stale objects of the last ingested page.

        Call once the page's rows are committed, so no committed row ever
        points at a deleted key.
        """
        pending, self._pending_prunes = self._pending_prunes, []
        for thread_id, post_id, keep in pending:
            await self._prune(thread_id, post_id, keep)

    def _collect(
        self,
        tasks: Sequence[UploadTask],
        links: dict[str, str],
        posts: Sequence[ExtractedPost],
    ) -> dict[int, list[StoredMedia]]:
        thumbs_ok = {
            (t.post_id, t.sequence) for t in tasks if t.is_thumbnail and t.key in links
        }
        stored: dict[int, list[StoredMedia]] = defaultdict(list)
        for post in posts:
            stored[post.post_id] = []
        for task in tasks:
            if task.is_thumbnail or task.key not in links:
                continue
            stored[task.post_id].append(StoredMedia(
                link=links[task.key],
                media_type=media_type(task.source_url) or media_type(task.key) or IMAGE,
                has_thumbnail=(task.post_id, task.sequence) in thumbs_ok,
                key=task.key,
            ))
        return dict(stored)

    async def _run_task(self, thread_id: int, task: UploadTask) -> str:
        data = await self._resolve(task)
        content_type = guess_mime(data, _key_extension(task.key))
        metadata = {
            "source-url": quote(task.source_url, safe=":/?&=%#@+,;"),
            "thread-id": str(thread_id),
            "post-id": str(task.post_id),
            "thumbnail": "true" if task.is_thumbnail else "false",
        }

        async def put() -> str:
            return await asyncio.to_thread(self.store.put, task.key, data, content_type, metadata)

        try:
            url = await self.retry.run(put, description=f"put {task.key}")
        except RetryExhausted as exc:
            raise StorageWriteFailure(str(exc)) from exc
        logger.debug("Stored %s (%s, %d bytes)", task.key, content_type, len(data))
        return url

    def attempt_timeout_for(self, url: str) -> float:
        """Budget for one resolve attempt; attachment pages need a render first."""
        if is_indirect_reference(url):
            return self.cfg.indirect_attempt_timeout
        return self.cfg.attempt_timeout

    async def _resolve(self, task: UploadTask) -> bytes:
        ceiling = self.fetcher.ceiling_for(task.source_url)

        async def attempt() -> bytes:
            task.attempts += 1
            return await self.fetcher.resolve(task.source_url)

        try:
            return await asyncio.wait_for(
                self.retry.run(
                    attempt,
                    description=f"resolve {task.source_url}",
                    timeout=self.attempt_timeout_for(task.source_url),
                ),
                ceiling,
            )
        except RetryExhausted as exc:
            raise AssetResolutionFailure(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise AssetResolutionFailure(
                f"{task.source_url}: not resolved within {ceiling:.0f}s"
            ) from exc

    async def _prune(self, thread_id: int, post_id: int, keep: list[str]) -> None:
        try:
            removed = await asyncio.to_thread(self.store.prune, post_prefix(thread_id, post_id), keep)
        except HarvesterError as exc:
            logger.warning("Could not prune stale media for post %d: %s", post_id, exc)
            return
        self.stats["pruned"] += removed
