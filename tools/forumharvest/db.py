"""Database operations – persist threads, posts, media rows and checkpoints."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import DatabaseConfig
from .errors import PersistenceFailure
from .models import ExtractedPost, ForumThread, StoredMedia, ThreadSummary

logger = logging.getLogger("forumharvest.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS forum_threads (
    thread_id         BIGINT PRIMARY KEY,
    title             TEXT NOT NULL DEFAULT '',
    creator           TEXT NOT NULL DEFAULT '',
    created_at        TIMESTAMPTZ,
    replies           INTEGER NOT NULL DEFAULT 0,
    views             INTEGER NOT NULL DEFAULT 0,
    url               TEXT NOT NULL DEFAULT '',
    last_replier      TEXT NOT NULL DEFAULT '',
    last_activity_at  TIMESTAMPTZ,
    last_synced_page  INTEGER,
    synced_through_at TIMESTAMPTZ,
    inserted_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS forum_threads_activity_idx
    ON forum_threads (last_activity_at DESC NULLS LAST);

CREATE TABLE IF NOT EXISTS forum_posts (
    post_id     BIGINT PRIMARY KEY,
    thread_id   BIGINT NOT NULL REFERENCES forum_threads (thread_id),
    author      TEXT NOT NULL DEFAULT '',
    content     TEXT NOT NULL DEFAULT '',
    created_at  TIMESTAMPTZ,
    likes       INTEGER NOT NULL DEFAULT 0,
    inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS forum_posts_thread_idx ON forum_posts (thread_id);

CREATE TABLE IF NOT EXISTS forum_media (
    id            BIGSERIAL PRIMARY KEY,
    thread_id     BIGINT NOT NULL,
    post_id       BIGINT NOT NULL REFERENCES forum_posts (post_id) ON DELETE CASCADE,
    link          TEXT NOT NULL,
    media_type    TEXT NOT NULL CHECK (media_type IN ('image', 'video')),
    has_thumbnail BOOLEAN NOT NULL DEFAULT FALSE,
    inserted_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS forum_media_post_idx ON forum_media (post_id, media_type);
"""

THREAD_COLUMNS = (
    "thread_id", "title", "creator", "created_at", "replies", "views", "url",
    "last_replier", "last_activity_at", "last_synced_page", "synced_through_at",
)


def _row_to_thread(row: dict[str, Any]) -> ForumThread:
    return ForumThread(**{col: row[col] for col in THREAD_COLUMNS})


class Database:
    """Postgres persistence gateway.

    Writes are not committed until :meth:`commit`; the orchestrator commits
    once per page so a page's posts, media rows and checkpoint land together.
    """

    def __init__(self, cfg: DatabaseConfig | None = None) -> None:
        self.cfg = cfg or DatabaseConfig.from_env()
        self._conn: psycopg.Connection | None = None

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = psycopg.connect(self.cfg.dsn, row_factory=dict_row, autocommit=False)
        return self._conn

    @contextmanager
    def _guard(self, what: str) -> Iterator[None]:
        try:
            yield
        except psycopg.Error as exc:
            raise PersistenceFailure(f"{what}: {exc}") from exc

    def ensure_schema(self) -> None:
        with self._guard("create schema"):
            self.conn.execute(SCHEMA)
            self.conn.commit()
        logger.info("Schema ready on %s/%s", self.cfg.host, self.cfg.dbname)

    # ── threads ──────────────────────────────────────────────────

    def upsert_thread(self, summary: ThreadSummary) -> None:
        """Insert or refresh listing metadata.  Checkpoint columns are left alone."""
        with self._guard(f"upsert thread {summary.thread_id}"):
            self.conn.execute(
                """INSERT INTO forum_threads (thread_id, title, creator, created_at, replies,
                                              views, url, last_replier, last_activity_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (thread_id) DO UPDATE SET
                       title            = EXCLUDED.title,
                       creator          = COALESCE(NULLIF(EXCLUDED.creator, ''), forum_threads.creator),
                       created_at       = COALESCE(EXCLUDED.created_at, forum_threads.created_at),
                       replies          = EXCLUDED.replies,
                       views            = EXCLUDED.views,
                       url              = COALESCE(NULLIF(EXCLUDED.url, ''), forum_threads.url),
                       last_replier     = EXCLUDED.last_replier,
                       last_activity_at = COALESCE(EXCLUDED.last_activity_at,
                                                   forum_threads.last_activity_at),
                       updated_at       = NOW()""",
                (
                    summary.thread_id, summary.title, summary.creator, summary.created_at,
                    summary.replies, summary.views, summary.url, summary.last_replier,
                    summary.last_activity_at,
                ),
            )

    def get_thread(self, thread_id: int) -> ForumThread | None:
        with self._guard(f"get thread {thread_id}"):
            row = self.conn.execute(
                "SELECT * FROM forum_threads WHERE thread_id = %s", (thread_id,)
            ).fetchone()
        return _row_to_thread(row) if row else None

    def find_threads_needing_sync(self, owner: Callable[[int], bool]) -> list[ForumThread]:
        """Threads never synced or with activity past their checkpoint, newest first."""
        with self._guard("find threads needing sync"):
            rows = self.conn.execute(
                """SELECT * FROM forum_threads
                   WHERE synced_through_at IS NULL
                      OR synced_through_at < last_activity_at
                   ORDER BY last_activity_at DESC NULLS LAST, thread_id"""
            ).fetchall()
        return [_row_to_thread(r) for r in rows if owner(r["thread_id"])]

    def update_checkpoint(
        self, thread_id: int, last_synced_page: int, synced_through_at: datetime | None = None
    ) -> None:
        with self._guard(f"checkpoint thread {thread_id}"):
            self.conn.execute(
                """UPDATE forum_threads SET
                       last_synced_page  = GREATEST(COALESCE(last_synced_page, 0), %s),
                       synced_through_at = COALESCE(%s::timestamptz, synced_through_at),
                       updated_at        = NOW()
                   WHERE thread_id = %s""",
                (last_synced_page, synced_through_at, thread_id),
            )

    # ── posts / media ────────────────────────────────────────────

    def upsert_post(self, thread_id: int, post: ExtractedPost) -> None:
        with self._guard(f"upsert post {post.post_id}"):
            self.conn.execute(
                """INSERT INTO forum_posts (post_id, thread_id, author, content, created_at, likes)
                   VALUES (%s, %s, %s, %s, %s, %s)
                   ON CONFLICT (post_id) DO UPDATE SET
                       thread_id  = EXCLUDED.thread_id,
                       author     = EXCLUDED.author,
                       content    = EXCLUDED.content,
                       created_at = EXCLUDED.created_at,
                       likes      = EXCLUDED.likes,
                       updated_at = NOW()
                   WHERE (forum_posts.thread_id, forum_posts.author, forum_posts.content,
                          forum_posts.created_at, forum_posts.likes)
                         IS DISTINCT FROM
                         (EXCLUDED.thread_id, EXCLUDED.author, EXCLUDED.content,
                          EXCLUDED.created_at, EXCLUDED.likes)""",
                (post.post_id, thread_id, post.author, post.content, post.created_at, post.likes),
            )

    def replace_post_media(
        self, thread_id: int, post_id: int, media_type: str, assets: Sequence[StoredMedia]
    ) -> None:
        """Delete the post's rows of ``media_type`` and write ``assets`` in their place."""
        with self._guard(f"replace media of post {post_id}"):
            self.conn.execute(
                "DELETE FROM forum_media WHERE post_id = %s AND media_type = %s",
                (post_id, media_type),
            )
            if not assets:
                return
            with self.conn.cursor() as cur:
                cur.executemany(
                    """INSERT INTO forum_media (thread_id, post_id, link, media_type, has_thumbnail)
                       VALUES (%s, %s, %s, %s, %s)""",
                    [(thread_id, post_id, a.link, media_type, a.has_thumbnail) for a in assets],
                )

    # ── transaction helpers ──────────────────────────────────────

    def commit(self) -> None:
        with self._guard("commit"):
            self.conn.commit()

    def rollback(self) -> None:
        if self._conn is None or self._conn.closed:
            return
        with self._guard("rollback"):
            self._conn.rollback()

    def close(self) -> None:
        if self._conn and not self._conn.closed:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
