"""Persist generated images and choose the URL handed back to callers."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Optional
from uuid import uuid4

from ..extraction import ExtractedImage
from .gcs import GcsBucket

logger = logging.getLogger(__name__)

ANONYMOUS_SCOPE = "anonymous"
_segment_pattern = re.compile(r"[^A-Za-z0-9_-]+")
_EXTENSIONS = {"jpeg": "jpg", "svg+xml": "svg"}


class StorageError(RuntimeError):
    """Raised when an image cannot be written to object storage."""


@dataclass(frozen=True)
class MaterializedImage:
    """Where a generated image can be retrieved from."""

    url: str
    data_url: str = ""
    public_url: Optional[str] = None
    signed_url: Optional[str] = None
    object_name: Optional[str] = None
    bucket: Optional[str] = None
    stored: bool = False


def _safe_segment(value: str, fallback: str) -> str:
    cleaned = _segment_pattern.sub("_", value or "").strip("_-")
    return cleaned or fallback


def make_object_name(
    folder: str,
    caller_id: Optional[str],
    mime_subtype: str,
    *,
    timestamp_ms: Optional[int] = None,
    unique: Optional[str] = None,
) -> str:
    """Return a key of the form `folder/caller/<epoch_ms>-<uuid>.<ext>`."""

    subtype = (mime_subtype or "png").lower()
    ext = _EXTENSIONS.get(subtype, _safe_segment(subtype, "png"))
    stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    name = f"{stamp}-{unique or uuid4().hex}.{ext}"
    return str(
        PurePosixPath(_safe_segment(folder, "uploads"))
        / _safe_segment(caller_id or "", ANONYMOUS_SCOPE)
        / name
    )


class ImageStorage:
    """Upload decoded images to GCS and hand back signed URLs."""

    def __init__(
        self,
        bucket: GcsBucket,
        *,
        folder: str,
        signed_url_ttl: timedelta,
    ) -> None:
        self._bucket = bucket
        self._folder = folder
        self._ttl = signed_url_ttl

    @property
    def bucket(self) -> GcsBucket:
        return self._bucket

    @property
    def available(self) -> bool:
        return self._bucket.available

    async def store(
        self,
        image: ExtractedImage,
        *,
        caller_id: Optional[str],
        folder: Optional[str] = None,
    ) -> MaterializedImage:
        """Upload ``image`` or raise :class:`StorageError`."""

        if not self.available:
            raise StorageError("Object storage is not configured")

        data = image.decode()
        object_name = make_object_name(folder or self._folder, caller_id, image.mime_subtype)
        try:
            await asyncio.to_thread(
                self._bucket.upload, object_name, data, content_type=image.mime_type
            )
        except Exception as exc:
            raise StorageError(f"Upload of {object_name} failed: {exc}") from exc

        public = self._bucket.public_url(object_name)
        signed: Optional[str]
        try:
            signed = await asyncio.to_thread(
                self._bucket.signed_url, object_name, expires_in=self._ttl
            )
        except Exception:
            logger.warning(
                "Signing URL for %s failed; using public URL", object_name, exc_info=True
            )
            signed = None

        logger.info("Stored generated image %s (%d bytes)", object_name, len(data))
        return MaterializedImage(
            url=signed or public,
            data_url=image.data_url,
            public_url=public,
            signed_url=signed,
            object_name=object_name,
            bucket=self._bucket.name,
            stored=True,
        )

    async def materialize(
        self,
        image: ExtractedImage,
        *,
        caller_id: Optional[str],
        folder: Optional[str] = None,
    ) -> MaterializedImage:
        """Store ``image``; on any storage failure return its data URI instead."""

        if not image.is_inline:
            return MaterializedImage(url=image.remote_url or "", stored=False)
        try:
            return await self.store(image, caller_id=caller_id, folder=folder)
        except StorageError as exc:
            logger.warning("Falling back to inline data URI: %s", exc)
            return MaterializedImage(url=image.data_url, data_url=image.data_url)


__all__ = [
    "ANONYMOUS_SCOPE",
    "ImageStorage",
    "MaterializedImage",
    "StorageError",
    "make_object_name",
]
