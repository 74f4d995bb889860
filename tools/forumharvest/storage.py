"""S3-compatible object storage – store media under deterministic keys."""

from __future__ import annotations

import io
import logging
from collections.abc import Iterable

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from .config import S3Config
from .errors import StorageWriteFailure

logger = logging.getLogger("forumharvest.storage")

# Map file extension → MIME type
MIME_MAP: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
}

DELETE_BATCH = 1000  # S3 DeleteObjects limit


def guess_mime(data: bytes, ext: str) -> str:
    """Content type for ``data``: sniffed by Pillow for images, else by extension."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "")
            if mime:
                return mime
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        pass
    return MIME_MAP.get(ext.lower(), "application/octet-stream")


class StorageService:
    """Put, list and delete media objects in MinIO / S3 (path-style)."""

    def __init__(self, cfg: S3Config | None = None, *, client: object | None = None) -> None:
        self.cfg = cfg or S3Config.from_env()
        self._s3 = client or boto3.client(
            "s3",
            endpoint_url=self.cfg.endpoint,
            region_name=self.cfg.region,
            aws_access_key_id=self.cfg.access_key,
            aws_secret_access_key=self.cfg.secret_key,
            config=BotoConfig(s3={"addressing_style": "path"}, retries={"max_attempts": 1}),
            use_ssl=self.cfg.use_ssl,
            verify=self.cfg.verify_tls,
        )
        if self.cfg.create_bucket:
            self._ensure_bucket()

    def _ensure_bucket(self) -> None:
        try:
            self._s3.head_bucket(Bucket=self.cfg.bucket)
        except ClientError:
            try:
                self._s3.create_bucket(Bucket=self.cfg.bucket)
                logger.info("Created bucket: %s", self.cfg.bucket)
            except (ClientError, BotoCoreError) as exc:
                logger.warning("Could not ensure bucket %s exists: %s", self.cfg.bucket, exc)

    def url_for(self, key: str) -> str:
        return f"{self.cfg.url_prefix}/{key}"

    # ── upload ───────────────────────────────────────────────────

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Write ``data`` under ``key`` (last writer wins) and return its public URL."""
        try:
            self._s3.put_object(
                Bucket=self.cfg.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageWriteFailure(f"put {key}: {exc}") from exc
        return self.url_for(key)

    # ── listing / pruning ────────────────────────────────────────

    def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.cfg.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (ClientError, BotoCoreError) as exc:
            raise StorageWriteFailure(f"list {prefix}: {exc}") from exc
        return keys

    def delete_keys(self, keys: Iterable[str]) -> int:
        """Batch-delete ``keys``; returns how many S3 reported as deleted."""
        keys = list(keys)
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH):
            batch = keys[start:start + DELETE_BATCH]
            try:
                resp = self._s3.delete_objects(
                    Bucket=self.cfg.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": False},
                )
            except (ClientError, BotoCoreError) as exc:
                raise StorageWriteFailure(f"delete {len(batch)} objects: {exc}") from exc
            deleted += len(resp.get("Deleted", []))
            for err in resp.get("Errors", []):
                logger.warning("Failed to delete %s: %s", err.get("Key"), err.get("Message"))
        return deleted

    def prune(self, prefix: str, keep: Iterable[str]) -> int:
        """Delete every object under ``prefix`` whose key is not in ``keep``."""
        keep = set(keep)
        stale = [k for k in self.list_keys(prefix) if k not in keep]
        if not stale:
            return 0
        count = self.delete_keys(stale)
        logger.debug("Pruned %d stale object(s) under %s", count, prefix)
        return count

    def close(self) -> None:
        close = getattr(self._s3, "close", None)
        if close:
            close()
