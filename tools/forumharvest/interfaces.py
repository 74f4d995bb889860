"""Narrow interfaces between the crawl core and its collaborators.

Concrete implementations live in :mod:`forumharvest.browser`,
:mod:`forumharvest.session`, :mod:`forumharvest.xenforo`,
:mod:`forumharvest.db`, :mod:`forumharvest.memstore`,
:mod:`forumharvest.storage`, :mod:`forumharvest.fetcher` and
:mod:`forumharvest.guardian`.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from .models import ExtractedPost, ForumThread, StoredMedia, ThreadSummary


class Browsing(Protocol):
    """What the core needs from a browser session."""

    @property
    def page(self) -> Any: ...

    async def goto(self, url: str, *, timeout: float | None = None) -> Any: ...

    def auxiliary_page(self) -> AbstractAsyncContextManager[Any]: ...

    async def fetch(self, url: str, *, timeout: float | None = None) -> bytes: ...


class SessionProvider(Protocol):
    async def ensure_authenticated(self, session: Any) -> bool: ...


class PageExtractor(Protocol):
    """Site-specific markup knowledge."""

    def thread_page_url(self, thread: ForumThread, page_no: int) -> str: ...

    def listing_page_url(self, page_no: int) -> str: ...

    async def prepare(self, page: Any) -> None: ...

    async def extract_posts(self, page: Any) -> list[ExtractedPost]: ...

    async def extract_total_page_count(self, page: Any) -> int: ...

    async def extract_thread_summaries(self, page: Any) -> list[ThreadSummary]: ...


class PersistenceGateway(Protocol):
    def upsert_thread(self, summary: ThreadSummary) -> None: ...

    def upsert_post(self, thread_id: int, post: ExtractedPost) -> None: ...

    def replace_post_media(
        self, thread_id: int, post_id: int, media_type: str, assets: Sequence[StoredMedia]
    ) -> None: ...

    def update_checkpoint(
        self, thread_id: int, last_synced_page: int, synced_through_at: datetime | None = None
    ) -> None: ...

    def find_threads_needing_sync(self, owner: Callable[[int], bool]) -> list[ForumThread]: ...

    def get_thread(self, thread_id: int) -> ForumThread | None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class ObjectStore(Protocol):
    def put(
        self, key: str, data: bytes, content_type: str, metadata: dict[str, str] | None = None
    ) -> str: ...

    def prune(self, prefix: str, keep: Sequence[str]) -> int: ...


class HostControl(Protocol):
    async def restart_browser_process(self) -> None: ...

    async def restart_host(self) -> None: ...


class AssetResolver(Protocol):
    def ceiling_for(self, url: str) -> float: ...

    async def resolve(self, url: str) -> bytes: ...
