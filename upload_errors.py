"""Error taxonomy shared by the media store, session manager and routes."""

from __future__ import annotations

from typing import Optional


class UploadError(RuntimeError):
    """Structured exception raised for media ingestion operations."""

    default_code = "error"
    default_status = 400

    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status or self.default_status


class InvalidRequest(UploadError):
    default_code = "invalid_request"
    default_status = 400


class SessionNotFound(UploadError):
    default_code = "session_not_found"
    default_status = 404


class SessionExpired(SessionNotFound):
    default_code = "session_expired"
    default_status = 410


class ChunkIndexOutOfRange(UploadError):
    default_code = "chunk_index_out_of_range"
    default_status = 416


class ChunkSizeMismatch(UploadError):
    default_code = "chunk_size_mismatch"
    default_status = 400


class IncompleteUpload(UploadError):
    default_code = "incomplete_upload"
    default_status = 409


class NotFound(UploadError):
    default_code = "not_found"
    default_status = 404


class StorageUnavailable(UploadError):
    """Raised when the remote backend keeps failing after every retry."""

    default_code = "storage_unavailable"
    default_status = 503


class ThumbnailFailed(UploadError):
    """Raised by thumbnail rendering; callers substitute a placeholder."""

    default_code = "thumbnail_failed"
    default_status = 500


class Aborted(UploadError):
    default_code = "aborted"
    default_status = 499
