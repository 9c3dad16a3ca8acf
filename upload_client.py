"""Client-side driver for the media upload API.

Small files go up in a single multipart request; anything above the size
threshold is sent through an upload session one chunk at a time so that a
proxy body limit never sees more than ``chunk_size`` bytes.  Every request is
retried with exponential backoff and the caller can cancel between requests.
"""

from __future__ import annotations

import io
import logging
import math
import mimetypes
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Optional, Set, Union

import requests

from upload_errors import Aborted

__all__ = [
    "UploadClient",
    "UploadClientError",
    "UploadAborted",
    "UploadProgress",
    "UploadResult",
]

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
DEFAULT_SIZE_THRESHOLD = 30 * 1024 * 1024
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_FINALIZE_WAIT = 300.0
CHUNK_PROGRESS_CAP = 90
LOG_PREFIX = "[UploadClient]"

logger = logging.getLogger(__name__)

Source = Union[str, os.PathLike, bytes, bytearray, BinaryIO]


class UploadClientError(RuntimeError):
    """Raised when an upload fails; ``session_id`` is kept so it can resume."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "upload_failed"
        self.status = status
        self.session_id = session_id


class UploadAborted(UploadClientError):
    """Raised when the cancel callback asks the upload to stop."""

    def __init__(self, message: str = "Upload cancelled", *, session_id: Optional[str] = None) -> None:
        super().__init__(
            message,
            code=Aborted.default_code,
            status=Aborted.default_status,
            session_id=session_id,
        )


class _RetryableResponse(Exception):
    def __init__(self, response: requests.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


@dataclass
class UploadProgress:
    progress: int
    status: str
    message: str = ""


@dataclass
class UploadResult:
    """Mirror of the server's finalize (or direct upload) response."""

    media_url: str
    filename: str
    is_video: bool
    key: Optional[str] = None
    thumbnail_url: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    chunked: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: Dict[str, Any], *, chunked: bool) -> "UploadResult":
        return cls(
            media_url=payload.get("mediaUrl", ""),
            filename=payload.get("filename", ""),
            is_video=bool(payload.get("isVideo")),
            key=payload.get("key"),
            thumbnail_url=payload.get("thumbnailUrl"),
            size=payload.get("size"),
            mime_type=payload.get("mimeType"),
            chunked=chunked,
            raw=dict(payload),
        )


ProgressCallback = Callable[[UploadProgress], None]
CancelCallback = Callable[[], bool]


class UploadClient:
    """Upload files to the media API, choosing direct or chunked transfer."""

    def __init__(
        self,
        base_url: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        size_threshold: int = DEFAULT_SIZE_THRESHOLD,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        finalize_wait: float = DEFAULT_FINALIZE_WAIT,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.base_url = base_url.rstrip("/")
        self.chunk_size = int(chunk_size)
        self.size_threshold = int(size_threshold)
        self.max_retries = max(0, int(max_retries))
        self.retry_delay = max(0.0, float(retry_delay))
        self.request_timeout = float(request_timeout)
        self.finalize_wait = max(0.0, float(finalize_wait))
        self._session = session or requests.Session()
        self._session.headers.setdefault("Accept", "application/json")
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, base_url: str, cfg: Dict[str, Any], **kwargs: Any) -> "UploadClient":
        mb = 1024 * 1024
        options: Dict[str, Any] = {
            "chunk_size": int(float(cfg.get("UPLOAD_CHUNK_SIZE_MB", 10)) * mb),
            "size_threshold": int(float(cfg.get("UPLOAD_SIZE_THRESHOLD_MB", 30)) * mb),
            "max_retries": int(cfg.get("CLIENT_MAX_RETRIES", DEFAULT_MAX_RETRIES)),
            "retry_delay": float(cfg.get("CLIENT_RETRY_DELAY", DEFAULT_RETRY_DELAY)),
            "request_timeout": float(cfg.get("CLIENT_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)),
            "finalize_wait": float(cfg.get("CLIENT_FINALIZE_WAIT_SECS", DEFAULT_FINALIZE_WAIT)),
        }
        options.update(kwargs)
        return cls(base_url, **options)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def should_chunk(self, size: int) -> bool:
        return size > self.size_threshold

    def upload(
        self,
        source: Source,
        *,
        filename: Optional[str] = None,
        mime_type: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_callback: Optional[CancelCallback] = None,
        finalize_payload: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> UploadResult:
        handle, owned, name = self._open_source(source, filename)
        try:
            size = _stream_size(handle)
            mime = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
            if session_id is None and not self.should_chunk(size):
                logger.info("%s direct upload %s (%d bytes)", LOG_PREFIX, name, size)
                return self._upload_direct(handle, name, mime, progress_callback, cancel_callback)
            logger.info(
                "%s chunked upload %s (%d bytes, %d byte chunks)",
                LOG_PREFIX,
                name,
                size,
                self.chunk_size,
            )
            return self._upload_chunked(
                handle,
                name,
                mime,
                size,
                progress_callback,
                cancel_callback,
                finalize_payload,
                session_id,
            )
        finally:
            if owned:
                handle.close()

    # ------------------------------------------------------------------
    # Transfer strategies
    # ------------------------------------------------------------------
    def _upload_direct(
        self,
        handle: BinaryIO,
        filename: str,
        mime_type: str,
        progress_callback: Optional[ProgressCallback],
        cancel_callback: Optional[CancelCallback],
    ) -> UploadResult:
        _notify(progress_callback, 0, "uploading", f"Uploading {filename}")
        handle.seek(0)
        data = handle.read()

        def _files() -> Dict[str, Any]:
            return {"file": (filename, data, mime_type)}

        payload = self._request(
            "POST",
            "/api/uploads",
            cancel_callback=cancel_callback,
            files_factory=_files,
        )
        _notify(progress_callback, 100, "complete", "Upload complete")
        return UploadResult.from_response(payload, chunked=False)

    def _upload_chunked(
        self,
        handle: BinaryIO,
        filename: str,
        mime_type: str,
        size: int,
        progress_callback: Optional[ProgressCallback],
        cancel_callback: Optional[CancelCallback],
        finalize_payload: Optional[Dict[str, Any]],
        session_id: Optional[str],
    ) -> UploadResult:
        received: Set[int] = set()
        if session_id is None:
            opened = self._request(
                "POST",
                "/api/uploads/sessions",
                cancel_callback=cancel_callback,
                json={
                    "filename": filename,
                    "mimeType": mime_type,
                    "totalSize": size,
                    "chunkSize": self.chunk_size,
                },
            )
            session_id = opened["sessionId"]
            chunk_size = int(opened.get("chunkSize") or self.chunk_size)
        else:
            snapshot = self._request(
                "GET",
                f"/api/uploads/sessions/{session_id}",
                cancel_callback=cancel_callback,
                session_id=session_id,
            )
            if snapshot.get("state") == "complete":
                logger.info("%s session %s already completed", LOG_PREFIX, session_id)
                _notify(progress_callback, 100, "complete", "Upload complete")
                return UploadResult.from_response(snapshot.get("result") or {}, chunked=True)
            chunk_size = int(snapshot.get("chunkSize") or self.chunk_size)
            received = {int(idx) for idx in snapshot.get("receivedChunks", [])}
            logger.info(
                "%s resuming session %s with %d chunk(s) already received",
                LOG_PREFIX,
                session_id,
                len(received),
            )

        total_chunks = max(1, math.ceil(size / chunk_size))
        for index in range(total_chunks):
            if index in received:
                continue
            handle.seek(index * chunk_size)
            chunk = handle.read(chunk_size)
            self._request(
                "PATCH",
                f"/api/uploads/sessions/{session_id}/chunk",
                cancel_callback=cancel_callback,
                session_id=session_id,
                params={"chunkIndex": index},
                data=chunk,
                headers={"Content-Type": "application/octet-stream"},
            )
            received.add(index)
            progress = min(CHUNK_PROGRESS_CAP, int(round(len(received) / total_chunks * 100)))
            _notify(
                progress_callback,
                progress,
                "uploading",
                f"Uploaded chunk {index + 1} of {total_chunks}",
            )

        _notify(progress_callback, CHUNK_PROGRESS_CAP, "processing", "Processing upload")
        payload = self._finalize(session_id, cancel_callback, finalize_payload)
        _notify(progress_callback, 100, "complete", "Upload complete")
        return UploadResult.from_response(payload, chunked=True)

    def _finalize(
        self,
        session_id: str,
        cancel_callback: Optional[CancelCallback],
        finalize_payload: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """POST finalize, riding out a finalize the server is still running.

        A retried finalize whose first attempt is still processing gets
        ``session_busy``; the session is then polled until it completes (the
        stored result is returned) or reopens (finalize is posted again).
        """

        deadline = self._clock() + self.finalize_wait
        while True:
            try:
                return self._request(
                    "POST",
                    f"/api/uploads/sessions/{session_id}/finalize",
                    cancel_callback=cancel_callback,
                    session_id=session_id,
                    json=dict(finalize_payload or {}),
                )
            except UploadClientError as exc:
                if exc.code != "session_busy":
                    raise
            logger.info("%s session %s is still finalizing; polling", LOG_PREFIX, session_id)
            snapshot = self._await_finalize(session_id, cancel_callback, deadline)
            if snapshot.get("state") == "complete":
                return snapshot.get("result") or {}

    def _await_finalize(
        self,
        session_id: str,
        cancel_callback: Optional[CancelCallback],
        deadline: float,
    ) -> Dict[str, Any]:
        while True:
            if self._clock() >= deadline:
                raise UploadClientError(
                    f"Server did not finish processing within {self.finalize_wait:.0f}s",
                    code="finalize_timeout",
                    session_id=session_id,
                )
            self._sleep(self.retry_delay)
            snapshot = self._request(
                "GET",
                f"/api/uploads/sessions/{session_id}",
                cancel_callback=cancel_callback,
                session_id=session_id,
            )
            if snapshot.get("state") != "finalizing":
                return snapshot

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------
    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    def _request(
        self,
        method: str,
        path: str,
        *,
        cancel_callback: Optional[CancelCallback] = None,
        session_id: Optional[str] = None,
        files_factory: Optional[Callable[[], Dict[str, Any]]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        url = self._url(path)
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            if cancel_callback is not None and cancel_callback():
                logger.info("%s %s %s cancelled by caller", LOG_PREFIX, method, url)
                raise UploadAborted(session_id=session_id)
            if files_factory is not None:
                kwargs["files"] = files_factory()
            try:
                response = self._session.request(method, url, timeout=self.request_timeout, **kwargs)
                if response.status_code == 429 or response.status_code >= 500:
                    raise _RetryableResponse(response)
            except (requests.ConnectionError, requests.Timeout, _RetryableResponse) as exc:
                if attempt + 1 >= attempts:
                    logger.error(
                        "%s %s %s failed after %d attempts (%s)",
                        LOG_PREFIX,
                        method,
                        url,
                        attempt + 1,
                        exc,
                    )
                    raise self._error_from(exc, session_id) from exc
                delay = self._backoff(attempt)
                logger.warning(
                    "%s %s %s attempt %d/%d failed (%s). Retrying in %.1fs",
                    LOG_PREFIX,
                    method,
                    url,
                    attempt + 1,
                    attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
                continue
            except requests.RequestException as exc:
                logger.error("%s %s %s failed: %s", LOG_PREFIX, method, url, exc)
                raise UploadClientError(str(exc), session_id=session_id) from exc

            if response.status_code >= 400:
                detail = _response_detail(response)
                logger.error(
                    "%s %s %s failed with status %d: %s",
                    LOG_PREFIX,
                    method,
                    url,
                    response.status_code,
                    detail.get("error"),
                )
                raise UploadClientError(
                    detail.get("error") or f"Upload request failed with status {response.status_code}",
                    code=detail.get("code"),
                    status=response.status_code,
                    session_id=session_id,
                )
            logger.debug("%s %s %s succeeded with status %d", LOG_PREFIX, method, url, response.status_code)
            return _response_detail(response)

        raise UploadClientError("Upload retries exhausted", session_id=session_id)

    def _error_from(self, exc: Exception, session_id: Optional[str]) -> UploadClientError:
        if isinstance(exc, _RetryableResponse):
            detail = _response_detail(exc.response)
            return UploadClientError(
                detail.get("error") or f"Upload request failed with status {exc.response.status_code}",
                code=detail.get("code") or "server_error",
                status=exc.response.status_code,
                session_id=session_id,
            )
        return UploadClientError(f"Network error: {exc}", code="network_error", session_id=session_id)

    # ------------------------------------------------------------------
    # Source handling
    # ------------------------------------------------------------------
    def _open_source(self, source: Source, filename: Optional[str]):
        if isinstance(source, (bytes, bytearray)):
            if not filename:
                raise ValueError("filename is required when uploading raw bytes")
            return io.BytesIO(bytes(source)), True, filename
        if isinstance(source, (str, os.PathLike)):
            path = Path(source)
            return path.open("rb"), True, filename or path.name
        name = filename or Path(getattr(source, "name", "") or "").name
        if not name:
            raise ValueError("filename is required for unnamed streams")
        return source, False, name


def _stream_size(handle: BinaryIO) -> int:
    current = handle.tell()
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(current)
    return size


def _response_detail(response: requests.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {"error": response.text} if response.text else {}
    return payload if isinstance(payload, dict) else {"data": payload}


def _notify(callback: Optional[ProgressCallback], progress: int, status: str, message: str) -> None:
    if callback is None:
        return
    try:
        callback(UploadProgress(progress=progress, status=status, message=message))
    except Exception:  # pragma: no cover - callbacks must not break the upload
        logger.exception("%s progress callback raised", LOG_PREFIX)
