"""Commit uploaded bytes to the media store and attach a preview thumbnail."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Optional, Set

from media_store import THUMBNAIL_PREFIX, MediaStore, derive_thumbnail_key, generate_blob_key
from thumbnailer import ThumbnailGenerator
from upload_errors import InvalidRequest, ThumbnailFailed, UploadError

logger = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/api/media"

DEFAULT_ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/mov",
    "video/quicktime",
    "video/webm",
    "video/x-msvideo",
    "video/3gpp",
)


def media_url(key: str) -> str:
    return f"{MEDIA_URL_PREFIX}/{key}"


def normalize_mime(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


@dataclass
class StoredObject:
    key: str
    mime_type: str
    size: int
    thumbnail_key: Optional[str] = None
    filename: Optional[str] = None

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mediaUrl": media_url(self.key),
            "filename": self.filename or PurePosixPath(self.key).name,
            "isVideo": self.is_video,
            "key": self.key,
            "size": self.size,
            "mimeType": self.mime_type,
        }
        if self.thumbnail_key:
            payload["thumbnailUrl"] = media_url(self.thumbnail_key)
            payload["thumbnailKey"] = self.thumbnail_key
        return payload


class MediaIngestor:
    """Store the primary blob, then build its thumbnail without risking the blob."""

    def __init__(
        self,
        store: MediaStore,
        thumbnailer: ThumbnailGenerator,
        *,
        allowed_mime_types: Optional[Iterable[str]] = None,
        async_thumbnails: bool = False,
        max_workers: int = 2,
    ) -> None:
        self.store = store
        self.thumbnailer = thumbnailer
        allowed = allowed_mime_types if allowed_mime_types is not None else DEFAULT_ALLOWED_MIME_TYPES
        self._allowed: Set[str] = {normalize_mime(item) for item in allowed if normalize_mime(item)}
        self._executor: Optional[ThreadPoolExecutor] = None
        if async_thumbnails:
            self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="thumbnail")

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def validate(self, filename: Optional[str], mime_type: Optional[str]) -> str:
        normalized = normalize_mime(mime_type)
        if not normalized:
            raise InvalidRequest("A MIME type is required", code="invalid_type")
        if self._allowed and normalized not in self._allowed:
            raise InvalidRequest(f"File type {normalized} not allowed", code="invalid_type")
        if not filename or not str(filename).strip():
            raise InvalidRequest("A filename is required", code="invalid_name")
        return normalized

    def ingest(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        normalized = self.validate(filename, mime_type)
        if not data:
            raise InvalidRequest("Upload is empty", code="empty_upload")

        key = generate_blob_key(filename, normalized)
        self.store.put(key, data)
        stored = StoredObject(key=key, mime_type=normalized, size=len(data), filename=filename)
        logger.info(
            "media.ingest key=%s size=%d mime=%s meta=%s",
            key,
            stored.size,
            normalized,
            sorted((metadata or {}).keys()),
        )

        if not self._wants_thumbnail(normalized):
            return stored

        thumbnail_key = derive_thumbnail_key(key)
        if self._executor is not None:
            future: Future = self._executor.submit(self._build_thumbnail, data, normalized, thumbnail_key)
            future.add_done_callback(_log_thumbnail_future)
            stored.thumbnail_key = thumbnail_key
            return stored

        if self._build_thumbnail(data, normalized, thumbnail_key):
            stored.thumbnail_key = thumbnail_key
        return stored

    def delete(self, key: str) -> None:
        """Remove a blob and its derived thumbnail; missing keys are fine."""

        self.store.delete(key)
        if not key.startswith(f"{THUMBNAIL_PREFIX}/"):
            self.store.delete(derive_thumbnail_key(key))

    def _wants_thumbnail(self, mime_type: str) -> bool:
        return mime_type.startswith("image/") or mime_type.startswith("video/")

    def _build_thumbnail(self, data: bytes, mime_type: str, thumbnail_key: str) -> bool:
        # The primary blob is already stored; nothing below may fail the upload.
        label = "Video" if mime_type.startswith("video/") else "Image"
        try:
            thumbnail = self.thumbnailer.for_mime(data, mime_type)
        except ThumbnailFailed as exc:
            logger.warning("Thumbnail for %s failed, using placeholder: %s", thumbnail_key, exc.message)
            thumbnail = self._placeholder(thumbnail_key, label)
        except Exception:
            logger.exception("Unexpected error rendering thumbnail %s, using placeholder", thumbnail_key)
            thumbnail = self._placeholder(thumbnail_key, label)
        if thumbnail is None:
            return False
        try:
            self.store.put(thumbnail_key, thumbnail)
        except UploadError as exc:
            logger.error("Unable to persist thumbnail %s: %s", thumbnail_key, exc.message)
            return False
        except Exception:
            logger.exception("Unexpected error persisting thumbnail %s", thumbnail_key)
            return False
        return True

    def _placeholder(self, thumbnail_key: str, label: str) -> Optional[bytes]:
        try:
            return self.thumbnailer.generate_placeholder_thumbnail(label=label)
        except Exception:
            logger.exception("Placeholder rendering failed for %s", thumbnail_key)
            return None


def _log_thumbnail_future(future: Future) -> None:
    exc = future.exception()
    if exc is not None:  # pragma: no cover - _build_thumbnail handles its own errors
        logger.error("Background thumbnail task failed: %s", exc)
