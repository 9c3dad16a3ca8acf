"""Durable blob storage for uploaded media.

``MediaStore`` fronts a single primary backend chosen once at startup.  The
remote backend (any S3 compatible object store reached through boto3) is
authoritative; the local filesystem backend doubles as an advisory read
cache and as the last-resort primary when the remote store cannot be
reached while the application is being configured.

Blob keys are derived from a timestamp, a random suffix and a sanitized
extension so lookups never need to guess between candidate paths.
Thumbnail keys are in turn derived from blob keys.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
import secrets
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from upload_errors import InvalidRequest, NotFound, StorageUnavailable

logger = logging.getLogger(__name__)

UPLOAD_PREFIX = "uploads"
THUMBNAIL_PREFIX = f"{UPLOAD_PREFIX}/thumbnails"
THUMBNAIL_EXTENSION = ".jpg"
DEFAULT_EXTENSION = "bin"
MAX_EXTENSION_LENGTH = 8
LOG_PREFIX = "[MediaStore]"

_EXTENSION_CLEANER = re.compile(r"[^a-z0-9]")
_S3_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}

T = TypeVar("T")


# ----------------------------------------------------------------------
# Key derivation
# ----------------------------------------------------------------------
def sanitize_extension(filename: Optional[str], mime_type: Optional[str] = None) -> str:
    """Return a lower-case alphanumeric extension (without the dot)."""

    ext = ""
    if filename:
        suffix = PurePosixPath(filename.replace("\\", "/")).suffix
        ext = _EXTENSION_CLEANER.sub("", suffix.lower())[:MAX_EXTENSION_LENGTH]
    if not ext and mime_type:
        guessed = mimetypes.guess_extension(mime_type.split(";", 1)[0].strip().lower()) or ""
        ext = _EXTENSION_CLEANER.sub("", guessed.lower())[:MAX_EXTENSION_LENGTH]
    return ext or DEFAULT_EXTENSION


def derive_blob_key(timestamp_ms: int, suffix: str, ext: str) -> str:
    return f"{UPLOAD_PREFIX}/{int(timestamp_ms)}-{suffix}.{ext}"


def generate_blob_key(filename: Optional[str], mime_type: Optional[str] = None) -> str:
    timestamp_ms = int(time.time() * 1000)
    return derive_blob_key(timestamp_ms, secrets.token_hex(4), sanitize_extension(filename, mime_type))


def derive_thumbnail_key(blob_key: str) -> str:
    """Map ``uploads/<name>.<ext>`` to ``uploads/thumbnails/<name>.jpg``."""

    stem = PurePosixPath(blob_key).stem
    if not stem:
        raise InvalidRequest("Cannot derive a thumbnail key from an empty key", code="invalid_key")
    return f"{THUMBNAIL_PREFIX}/{stem}{THUMBNAIL_EXTENSION}"


def validate_key(key: str) -> str:
    if not isinstance(key, str):
        raise InvalidRequest("Storage key must be a string", code="invalid_key")
    cleaned = key.strip()
    if not cleaned or cleaned.startswith("/") or "\\" in cleaned:
        raise InvalidRequest("Invalid storage key", code="invalid_key")
    parts = cleaned.split("/")
    if any(part in {"", ".", ".."} for part in parts):
        raise InvalidRequest("Invalid storage key", code="invalid_key")
    return cleaned


def validate_prefix(prefix: Optional[str]) -> str:
    """Like :func:`validate_key`, but empty and trailing-slash prefixes are fine."""

    if not prefix:
        return ""
    trailing = "/" if prefix.endswith("/") else ""
    return validate_key(prefix.rstrip("/")) + trailing


# ----------------------------------------------------------------------
# Retry policy
# ----------------------------------------------------------------------
class BackendError(RuntimeError):
    """Transient backend failure that is worth retrying."""


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff (delay doubles per attempt)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))

    def call(self, operation: Callable[[], T], description: str) -> T:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except NotFound:
                raise
            except BackendError as exc:
                if attempt >= attempts:
                    logger.error("%s %s failed after %d attempts (%s)", LOG_PREFIX, description, attempt, exc)
                    raise StorageUnavailable(
                        f"{description} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s %s attempt %d/%d failed (%s). Retrying in %.1fs",
                    LOG_PREFIX,
                    description,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise StorageUnavailable(f"{description} retries exhausted")


# ----------------------------------------------------------------------
# Backends
# ----------------------------------------------------------------------
class LocalBackend:
    """Filesystem backend; writes land via a temp file and ``os.replace``."""

    name = "local"
    remote = False

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        root_base = self.root.resolve()
        target = (self.root / key).resolve()
        try:
            target.relative_to(root_base)
        except ValueError:
            raise InvalidRequest("Key escapes the storage root", code="invalid_key")
        return target

    def put(self, key: str, data: bytes) -> None:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".put-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(temp_name, target)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def get(self, key: str) -> bytes:
        target = self._path(key)
        try:
            return target.read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            raise NotFound(f"No object stored under '{key}'")

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def list(self, prefix: str = "") -> List[str]:
        keys: List[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith(".put-"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.name, "root": str(self.root)}


class S3Backend:
    """Remote backend for any S3 compatible object store."""

    name = "s3"
    remote = True

    def __init__(self, bucket: str, client: Any, *, prefix: str = "") -> None:
        if not bucket:
            raise ValueError("An S3 bucket name is required")
        self.bucket = bucket
        self.client = client
        self.prefix = prefix.strip("/")

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        error = exc.response.get("Error", {}) if hasattr(exc, "response") else {}
        return str(error.get("Code", "")) in _S3_MISSING_CODES

    def put(self, key: str, data: bytes) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=self._object_key(key), Body=data)
        except (ClientError, BotoCoreError) as exc:
            raise BackendError(str(exc)) from exc

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._object_key(key))
            return response["Body"].read()
        except ClientError as exc:
            if self._is_missing(exc):
                raise NotFound(f"No object stored under '{key}'")
            raise BackendError(str(exc)) from exc
        except BotoCoreError as exc:
            raise BackendError(str(exc)) from exc

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._object_key(key))
            return True
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            raise BackendError(str(exc)) from exc
        except BotoCoreError as exc:
            raise BackendError(str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._object_key(key))
        except (ClientError, BotoCoreError) as exc:
            raise BackendError(str(exc)) from exc

    def list(self, prefix: str = "") -> List[str]:
        strip = len(self.prefix) + 1 if self.prefix else 0
        keys: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._object_key(prefix)):
                for item in page.get("Contents", []):
                    keys.append(item["Key"][strip:])
        except (ClientError, BotoCoreError) as exc:
            raise BackendError(str(exc)) from exc
        return sorted(keys)

    def ping(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            raise BackendError(str(exc)) from exc

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.name, "bucket": self.bucket, "prefix": self.prefix}


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
class MediaStore:
    """Key/value blob storage with retries around the remote backend."""

    def __init__(
        self,
        backend: Any,
        *,
        cache: Optional[LocalBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.backend = backend
        self.cache = cache if getattr(backend, "remote", False) else None
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def backend_name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    def _call(self, operation: Callable[[], T], description: str) -> T:
        if getattr(self.backend, "remote", False):
            return self.retry_policy.call(operation, description)
        try:
            return operation()
        except OSError as exc:
            logger.error("%s %s failed on local storage: %s", LOG_PREFIX, description, exc)
            raise StorageUnavailable(f"{description} failed: {exc}") from exc

    def put(self, key: str, data: bytes) -> None:
        key = validate_key(key)
        payload = data if isinstance(data, (bytes, bytearray)) else bytes(data)
        self._call(lambda: self.backend.put(key, payload), f"put {key}")
        logger.info("%s stored key=%s size=%d backend=%s", LOG_PREFIX, key, len(payload), self.backend_name)
        if self.cache is not None:
            try:
                self.cache.put(key, payload)
            except OSError as exc:
                logger.debug("%s cache write skipped for %s: %s", LOG_PREFIX, key, exc)

    def get(self, key: str) -> bytes:
        key = validate_key(key)
        if self.cache is not None:
            try:
                return self.cache.get(key)
            except NotFound:
                pass
            except OSError as exc:
                logger.debug("%s cache read failed for %s: %s", LOG_PREFIX, key, exc)
        data = self._call(lambda: self.backend.get(key), f"get {key}")
        if self.cache is not None:
            try:
                self.cache.put(key, data)
            except OSError as exc:
                logger.debug("%s cache fill skipped for %s: %s", LOG_PREFIX, key, exc)
        return data

    def exists(self, key: str) -> bool:
        key = validate_key(key)
        return bool(self._call(lambda: self.backend.exists(key), f"exists {key}"))

    def delete(self, key: str) -> None:
        key = validate_key(key)
        if self.cache is not None:
            try:
                self.cache.delete(key)
            except OSError as exc:
                logger.debug("%s cache delete failed for %s: %s", LOG_PREFIX, key, exc)
        if not self.exists(key):
            logger.debug("%s delete of missing key %s ignored", LOG_PREFIX, key)
            return
        self._call(lambda: self.backend.delete(key), f"delete {key}")
        logger.info("%s deleted key=%s backend=%s", LOG_PREFIX, key, self.backend_name)

    def list(self, prefix: str = "") -> List[str]:
        """Return every stored key starting with ``prefix``, sorted.

        The primary backend is authoritative; the cache is never consulted.
        """

        prefix = validate_prefix(prefix)
        return list(self._call(lambda: self.backend.list(prefix), f"list {prefix or '*'}"))

    def describe(self) -> Dict[str, Any]:
        info = dict(self.backend.describe()) if hasattr(self.backend, "describe") else {"backend": self.backend_name}
        info["cache"] = str(self.cache.root) if self.cache is not None else None
        return info


def _as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip().lower()
        if not stripped:
            return default
        return stripped in {"1", "true", "yes", "on"}
    if value is None:
        return default
    return bool(value)


def build_retry_policy(cfg: Dict[str, Any]) -> RetryPolicy:
    try:
        attempts = max(1, int(cfg.get("STORAGE_RETRY_ATTEMPTS", 3)))
    except (TypeError, ValueError):
        attempts = 3
    try:
        base_delay = max(0.0, float(cfg.get("STORAGE_RETRY_BASE_DELAY", 1.0)))
    except (TypeError, ValueError):
        base_delay = 1.0
    try:
        max_delay = max(base_delay, float(cfg.get("STORAGE_RETRY_MAX_DELAY", 30.0)))
    except (TypeError, ValueError):
        max_delay = 30.0
    return RetryPolicy(max_attempts=attempts, base_delay=base_delay, max_delay=max_delay)


def _build_s3_client(cfg: Dict[str, Any]) -> Any:
    timeout = float(cfg.get("STORAGE_REQUEST_TIMEOUT", 60) or 60)
    return boto3.client(
        "s3",
        endpoint_url=cfg.get("S3_ENDPOINT_URL") or None,
        region_name=cfg.get("S3_REGION") or "us-east-1",
        config=BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def build_media_store(cfg: Dict[str, Any], *, s3_client: Any = None) -> MediaStore:
    """Select the storage backend once, falling back to local when S3 is down."""

    retry_policy = build_retry_policy(cfg)
    local_root = cfg.get("STORAGE_LOCAL_ROOT") or "./media_store"
    backend_name = str(cfg.get("STORAGE_BACKEND") or "local").strip().lower()

    if backend_name == "s3":
        bucket = str(cfg.get("S3_BUCKET") or "").strip()
        if not bucket:
            logger.warning("%s STORAGE_BACKEND=s3 without S3_BUCKET; using local storage at %s", LOG_PREFIX, local_root)
        else:
            try:
                client = s3_client if s3_client is not None else _build_s3_client(cfg)
                backend = S3Backend(bucket, client, prefix=str(cfg.get("S3_PREFIX") or ""))
                retry_policy.call(backend.ping, f"ping bucket {bucket}")
            except (StorageUnavailable, BotoCoreError, ValueError) as exc:
                logger.warning(
                    "%s Remote bucket %s unavailable at startup (%s); using local storage at %s",
                    LOG_PREFIX,
                    bucket,
                    exc,
                    local_root,
                )
            else:
                cache = None
                if _as_bool(cfg.get("STORAGE_CACHE_ENABLED"), True):
                    cache = LocalBackend(cfg.get("STORAGE_CACHE_DIR") or "./media_cache")
                logger.info("%s Using S3 bucket %s", LOG_PREFIX, bucket)
                return MediaStore(backend, cache=cache, retry_policy=retry_policy)
    elif backend_name != "local":
        logger.warning("%s Unknown STORAGE_BACKEND '%s'; using local storage", LOG_PREFIX, backend_name)

    logger.info("%s Using local storage at %s", LOG_PREFIX, local_root)
    return MediaStore(LocalBackend(local_root), retry_policy=retry_policy)

