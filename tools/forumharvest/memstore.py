"""In-memory persistence gateway for dry runs and tests."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime

from .errors import PersistenceFailure
from .models import ExtractedPost, ForumThread, MediaAsset, StoredMedia, ThreadSummary

logger = logging.getLogger("forumharvest.memstore")


class InMemoryStore:
    """Same semantics as :class:`~forumharvest.db.Database`, kept in dicts.

    Writes are staged until :meth:`commit`; :meth:`rollback` discards them.
    """

    def __init__(self) -> None:
        self.threads: dict[int, ForumThread] = {}
        self.posts: dict[int, tuple[int, ExtractedPost]] = {}
        self.media: list[MediaAsset] = []
        self._snapshot = self._take_snapshot()
        self.commits = 0
        self.rollbacks = 0

    def _take_snapshot(self) -> tuple:
        return copy.deepcopy((self.threads, self.posts, self.media))

    # ── threads ──────────────────────────────────────────────────

    def upsert_thread(self, summary: ThreadSummary) -> None:
        existing = self.threads.get(summary.thread_id)
        if existing is None:
            self.threads[summary.thread_id] = ForumThread(
                thread_id=summary.thread_id,
                title=summary.title,
                creator=summary.creator,
                created_at=summary.created_at,
                replies=summary.replies,
                views=summary.views,
                url=summary.url,
                last_replier=summary.last_replier,
                last_activity_at=summary.last_activity_at,
            )
            return
        self.threads[summary.thread_id] = replace(
            existing,
            title=summary.title,
            creator=summary.creator or existing.creator,
            created_at=summary.created_at or existing.created_at,
            replies=summary.replies,
            views=summary.views,
            url=summary.url or existing.url,
            last_replier=summary.last_replier,
            last_activity_at=summary.last_activity_at or existing.last_activity_at,
        )

    def add_thread(self, thread: ForumThread) -> None:
        """Seed a thread with its checkpoint, committed immediately."""
        self.threads[thread.thread_id] = copy.copy(thread)
        self.commit()

    def get_thread(self, thread_id: int) -> ForumThread | None:
        thread = self.threads.get(thread_id)
        return copy.copy(thread) if thread else None

    def find_threads_needing_sync(self, owner: Callable[[int], bool]) -> list[ForumThread]:
        pending = [t for t in self.threads.values() if t.needs_sync and owner(t.thread_id)]
        pending.sort(key=lambda t: t.thread_id)
        pending.sort(
            key=lambda t: t.last_activity_at.timestamp() if t.last_activity_at else float("-inf"),
            reverse=True,
        )
        return [copy.copy(t) for t in pending]

    def update_checkpoint(
        self, thread_id: int, last_synced_page: int, synced_through_at: datetime | None = None
    ) -> None:
        thread = self.threads.get(thread_id)
        if thread is None:
            return
        thread.last_synced_page = max(thread.last_synced_page or 0, last_synced_page)
        if synced_through_at is not None:
            thread.synced_through_at = synced_through_at

    # ── posts / media ────────────────────────────────────────────

    def upsert_post(self, thread_id: int, post: ExtractedPost) -> None:
        if thread_id not in self.threads:
            raise PersistenceFailure(f"post {post.post_id} references unknown thread {thread_id}")
        self.posts[post.post_id] = (thread_id, replace(post, media=[]))

    def replace_post_media(
        self, thread_id: int, post_id: int, media_type: str, assets: Sequence[StoredMedia]
    ) -> None:
        if post_id not in self.posts:
            raise PersistenceFailure(f"media for unknown post {post_id}")
        self.media = [
            m for m in self.media if not (m.post_id == post_id and m.media_type == media_type)
        ]
        self.media.extend(
            MediaAsset(thread_id, post_id, a.link, media_type, a.has_thumbnail) for a in assets
        )

    def post_media(self, post_id: int) -> list[MediaAsset]:
        return [m for m in self.media if m.post_id == post_id]

    # ── transaction helpers ──────────────────────────────────────

    def commit(self) -> None:
        self._snapshot = self._take_snapshot()
        self.commits += 1

    def rollback(self) -> None:
        self.threads, self.posts, self.media = copy.deepcopy(self._snapshot)
        self.rollbacks += 1

    def close(self) -> None:
        logger.debug(
            "In-memory store discarded: %d thread(s), %d post(s), %d media row(s)",
            len(self.threads), len(self.posts), len(self.media),
        )
