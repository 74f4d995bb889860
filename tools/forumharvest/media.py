"""Media classification and deterministic storage-key derivation.

All functions here are pure: no network, no clock.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import unquote, urlsplit

from .models import IMAGE, VIDEO, MediaReference

IMAGE_EXTENSIONS = ("jpeg", "jpg", "png", "gif", "bmp", "webp", "svg")
VIDEO_EXTENSIONS = ("mp4", "webm", "mov", "avi", "mkv", "wmv", "flv", "m4v")
VIDEO_HOSTS = ("youtube.com", "youtu.be", "vimeo.com")

DEFAULT_EXTENSION = ".jpg"
KEY_PREFIX = "forum-media"
THUMB_SUFFIX = "_thumb"

_ALL = "|".join(IMAGE_EXTENSIONS + VIDEO_EXTENSIONS)
_IMAGE_RE = re.compile(r"\.(%s)(?![a-z0-9])" % "|".join(IMAGE_EXTENSIONS))
_VIDEO_RE = re.compile(r"\.(%s)(?![a-z0-9])" % "|".join(VIDEO_EXTENSIONS))
_DOTTED_RE = re.compile(r"\.(%s)(?![a-z0-9])" % _ALL)
# "screenshot-2024-png.120147661" names a png without carrying a .png
_TOKEN_RE = re.compile(r"(?:^|[^a-z0-9])(%s)(?![a-z0-9])" % _ALL)
_SEPARATED_RE = re.compile(r"[._-](%s)(?![a-z0-9])" % _ALL)
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9.-]")

MAX_BASENAME = 80


def is_image(url: str) -> bool:
    return bool(_IMAGE_RE.search(url.lower()))


def is_video(url: str) -> bool:
    lower = url.lower()
    return bool(_VIDEO_RE.search(lower)) or any(host in lower for host in VIDEO_HOSTS)


def media_type(url: str) -> str | None:
    """``"video"``, ``"image"`` or None when the URL names neither."""
    if is_video(url):
        return VIDEO
    if is_image(url):
        return IMAGE
    return None


def is_indirect_reference(url: str) -> bool:
    """True for attachment-page URLs that name a format but carry no extension.

    Fetching such a URL directly returns an HTML wrapper, not the asset.
    """
    parts = urlsplit(url.lower())
    path = f"{parts.path}?{parts.query}"
    return bool(_TOKEN_RE.search(path)) and not _DOTTED_RE.search(path)


def extract_extension(url: str) -> str:
    """Best guess at the asset's extension, e.g. ``".png"``.

    Accepts ``.png``, ``-png`` and ``_png`` forms; falls back to ``.jpg``.
    The fallback can be wrong, callers must tolerate that.
    """
    path = urlsplit(url.lower()).path
    dotted = _DOTTED_RE.findall(path)
    if dotted:
        return "." + dotted[-1]
    separated = _SEPARATED_RE.findall(path)
    if separated:
        return "." + separated[-1]
    return DEFAULT_EXTENSION


def base_name(url: str) -> str:
    """Sanitised last path segment of ``url`` without its extension token."""
    segments = [s for s in urlsplit(url).path.split("/") if s]
    name = unquote(segments[-1]) if segments else ""
    name = _SEPARATED_RE.sub("", name.lower(), count=1)
    name = _UNSAFE_RE.sub("", name).strip(".-")
    return name[:MAX_BASENAME] or "media"


def derive_key(
    thread_id: int,
    post_id: int,
    sequence: int,
    extension: str,
    is_thumbnail: bool,
    source_url: str = "",
) -> str:
    """Storage key for one rendition of one media reference.

    Same inputs give the same key, so re-ingesting a post overwrites its
    objects instead of duplicating them.
    """
    if extension and not extension.startswith("."):
        extension = "." + extension
    suffix = THUMB_SUFFIX if is_thumbnail else ""
    return f"{post_prefix(thread_id, post_id)}{sequence}-{base_name(source_url)}{suffix}{extension}"


def post_prefix(thread_id: int, post_id: int) -> str:
    return f"{KEY_PREFIX}/{thread_id}/{post_id}/"


def dedupe_references(refs: Iterable[MediaReference]) -> list[MediaReference]:
    """Drop empty pairs and pairs whose primary URL was already seen.  Order is kept."""
    seen: set[str] = set()
    unique: list[MediaReference] = []
    for ref in refs:
        if ref.is_empty or ref.primary_url in seen:
            continue
        seen.add(ref.primary_url)
        unique.append(ref)
    return unique
