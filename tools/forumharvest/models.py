"""Records passed between the crawl, the ingestion pipeline and the database."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

IMAGE = "image"
VIDEO = "video"
MEDIA_TYPES = (IMAGE, VIDEO)


@dataclass
class ForumThread:
    thread_id: int
    title: str = ""
    creator: str = ""
    created_at: datetime | None = None
    replies: int = 0
    views: int = 0
    url: str = ""
    last_replier: str = ""
    last_activity_at: datetime | None = None
    # checkpoint
    last_synced_page: int | None = None
    synced_through_at: datetime | None = None

    @property
    def fully_synced(self) -> bool:
        return self.synced_through_at is not None and self.synced_through_at == self.last_activity_at

    @property
    def needs_sync(self) -> bool:
        if self.synced_through_at is None:
            return True
        return self.last_activity_at is not None and self.synced_through_at < self.last_activity_at


@dataclass(frozen=True)
class MediaReference:
    """A ``(full, thumb)`` URL pair found in one post.  One side may be empty."""
    full_url: str = ""
    thumb_url: str = ""

    @property
    def primary_url(self) -> str:
        return self.full_url or self.thumb_url

    @property
    def is_empty(self) -> bool:
        return not self.full_url and not self.thumb_url


@dataclass
class ExtractedPost:
    """One post as returned by the page extraction adapter."""
    post_id: int
    author: str = ""
    content: str = ""
    created_at: datetime | None = None
    likes: int = 0
    media: list[MediaReference] = field(default_factory=list)


@dataclass
class ThreadSummary:
    """A thread row as seen on the forum listing."""
    thread_id: int
    title: str = ""
    creator: str = ""
    created_at: datetime | None = None
    replies: int = 0
    views: int = 0
    url: str = ""
    last_replier: str = ""
    last_activity_at: datetime | None = None


@dataclass
class UploadTask:
    post_id: int
    sequence: int
    source_url: str
    key: str
    is_thumbnail: bool = False
    paired: bool = False  # the reference carried both a full and a thumb URL
    attempts: int = 0


@dataclass(frozen=True)
class StoredMedia:
    """A full-size asset that reached object storage."""
    link: str
    media_type: str
    has_thumbnail: bool = False
    key: str = ""


@dataclass(frozen=True)
class MediaAsset:
    """A ``forum_media`` row."""
    thread_id: int
    post_id: int
    link: str
    media_type: str
    has_thumbnail: bool = False
