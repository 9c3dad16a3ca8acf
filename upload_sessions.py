"""Server-side state for chunked uploads.

Each session spools its chunks to ``<spool_dir>/<session_id>/`` (one file
per chunk index) so that a duplicate write for the same index simply
replaces the earlier bytes.  Finalize concatenates the chunks in index order
and hands the buffer to the :class:`MediaIngestor`.  Sessions that sit idle
for longer than the configured timeout are swept by a background thread,
which also removes their spooled data.

A completed session is destroyed along with its spool, but its result is
kept for one timeout period so a repeated finalize returns the same object.
Lock order is always the session lock first, then the registry lock.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from media_ingest import MediaIngestor, StoredObject
from upload_errors import (
    ChunkIndexOutOfRange,
    ChunkSizeMismatch,
    IncompleteUpload,
    InvalidRequest,
    SessionExpired,
    SessionNotFound,
    UploadError,
)

logger = logging.getLogger(__name__)

STATE_OPEN = "open"
STATE_FINALIZING = "finalizing"
STATE_COMPLETE = "complete"
STATE_EXPIRED = "expired"
STATE_ABORTED = "aborted"

DEFAULT_MAX_CHUNK_SIZE = 10 * 1024 * 1024
DEFAULT_SESSION_TIMEOUT = 24 * 60 * 60
DEFAULT_CLEANUP_INTERVAL = 15 * 60


def _to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class UploadSession:
    session_id: str
    filename: str
    mime_type: str
    total_size: int
    chunk_size: int
    spool_dir: Path
    created_at: float
    last_activity_at: float
    state: str = STATE_OPEN
    chunk_lengths: Dict[int, int] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def expected_chunk_count(self) -> int:
        return math.ceil(self.total_size / self.chunk_size)

    @property
    def received_chunks(self) -> Set[int]:
        return set(self.chunk_lengths)

    @property
    def bytes_received(self) -> int:
        return sum(self.chunk_lengths.values())

    @property
    def progress(self) -> int:
        if self.total_size <= 0:
            return 0
        return min(100, int(round(self.bytes_received * 100 / self.total_size)))

    def expected_length(self, index: int) -> int:
        if index < self.expected_chunk_count - 1:
            return self.chunk_size
        return self.total_size - self.chunk_size * (self.expected_chunk_count - 1)

    def missing_chunks(self) -> List[int]:
        return [idx for idx in range(self.expected_chunk_count) if idx not in self.chunk_lengths]

    def chunk_path(self, index: int) -> Path:
        return self.spool_dir / f"chunk_{index:06d}.part"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "totalSize": self.total_size,
            "chunkSize": self.chunk_size,
            "expectedChunkCount": self.expected_chunk_count,
            "receivedChunks": sorted(self.chunk_lengths),
            "bytesReceived": self.bytes_received,
            "progress": self.progress,
            "state": self.state,
            "createdAt": _to_iso(self.created_at),
            "lastActivityAt": _to_iso(self.last_activity_at),
        }


class UploadSessionManager:
    """Track chunked uploads independently of the request that opened them."""

    def __init__(
        self,
        ingestor: MediaIngestor,
        *,
        spool_dir: Union[str, Path, None] = None,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
        max_upload_bytes: Optional[int] = None,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        autostart: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ingestor = ingestor
        base = Path(spool_dir) if spool_dir else Path(tempfile.gettempdir()) / "temp-uploads"
        self._spool_dir = base.expanduser()
        self._spool_dir.mkdir(parents=True, exist_ok=True)
        self._max_chunk_size = max(1, int(max_chunk_size))
        self._max_upload_bytes = int(max_upload_bytes) if max_upload_bytes else None
        self._session_timeout = max(1.0, float(session_timeout))
        self._cleanup_interval = max(1.0, float(cleanup_interval))
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}
        self._completed: Dict[str, Tuple[float, StoredObject]] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if autostart:
            self.start()

    # ------------------------------------------------------------------ Lifecycle
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._cleanup_loop, name="UploadSessionCleanup", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=2.0)

    @property
    def spool_dir(self) -> Path:
        return self._spool_dir

    def open_count(self) -> int:
        with self._lock:
            return sum(1 for session in self._sessions.values() if session.state == STATE_OPEN)

    # ------------------------------------------------------------------ Session operations
    def open_session(self, filename: str, mime_type: str, total_size: Any, chunk_size: Any) -> str:
        try:
            total = int(total_size)
            chunk = int(chunk_size)
        except (TypeError, ValueError):
            raise InvalidRequest("totalSize and chunkSize must be integers")
        if total <= 0:
            raise InvalidRequest("totalSize must be greater than zero")
        if chunk <= 0:
            raise InvalidRequest("chunkSize must be greater than zero")
        if self._max_upload_bytes is not None and total > self._max_upload_bytes:
            raise InvalidRequest("File exceeds configured upload limit", code="too_large")
        mime = self._ingestor.validate(filename, mime_type)
        chunk = min(chunk, self._max_chunk_size)

        session_id = str(uuid.uuid4())
        now = self._clock()
        spool = self._spool_dir / session_id
        try:
            spool.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            logger.error("Unable to create spool directory %s: %s", spool, exc)
            raise UploadError("Unable to start upload session", code="session_failed", status=500)
        session = UploadSession(
            session_id=session_id,
            filename=str(filename).strip(),
            mime_type=mime,
            total_size=total,
            chunk_size=chunk,
            spool_dir=spool,
            created_at=now,
            last_activity_at=now,
        )
        with self._lock:
            self._sessions[session_id] = session
        logger.info(
            "upload.session_open id=%s filename=%s size=%d chunk=%d chunks=%d",
            session_id,
            session.filename,
            total,
            chunk,
            session.expected_chunk_count,
        )
        return session_id

    def get_session(self, session_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound("Upload session not found")
        self._expire_if_stale(session, self._clock())
        if session.state == STATE_EXPIRED:
            raise SessionExpired("Upload session expired")
        return session

    def status(self, session_id: str) -> Dict[str, Any]:
        """Snapshot for resume; completed sessions report their stored result."""

        completed = self._completed_result(session_id)
        if completed is not None:
            return {
                "sessionId": session_id,
                "state": STATE_COMPLETE,
                "progress": 100,
                "result": completed.to_response(),
            }
        session = self.get_session(session_id)
        with session.lock:
            self._check_live(session)
            return session.to_dict()

    def write_chunk(self, session_id: str, index: Any, data: bytes) -> int:
        session = self.get_session(session_id)
        try:
            chunk_index = int(index)
        except (TypeError, ValueError):
            raise InvalidRequest("chunkIndex must be an integer")
        with session.lock:
            self._require_open(session)
            expected_count = session.expected_chunk_count
            if chunk_index < 0 or chunk_index >= expected_count:
                raise ChunkIndexOutOfRange(
                    f"chunkIndex {chunk_index} outside [0, {expected_count})"
                )
            expected_length = session.expected_length(chunk_index)
            if len(data) != expected_length:
                raise ChunkSizeMismatch(
                    f"Chunk {chunk_index} is {len(data)} bytes, expected {expected_length}"
                )
            self._write_spool(session.chunk_path(chunk_index), data)
            duplicate = chunk_index in session.chunk_lengths
            session.chunk_lengths[chunk_index] = len(data)
            session.last_activity_at = self._clock()
            progress = session.progress
        logger.debug(
            "upload.chunk id=%s index=%d/%d bytes=%d progress=%d%%%s",
            session_id,
            chunk_index + 1,
            expected_count,
            len(data),
            progress,
            " (overwrite)" if duplicate else "",
        )
        return progress

    def finalize(self, session_id: str, metadata: Optional[Dict[str, Any]] = None) -> StoredObject:
        """Commit the assembled upload.

        Finalizing a session that already completed returns the same result,
        so a client whose finalize response was lost can simply repeat it.
        """

        replay = self._completed_result(session_id)
        if replay is not None:
            logger.info("upload.finalize_replay id=%s key=%s", session_id, replay.key)
            return replay
        session = self.get_session(session_id)
        with session.lock:
            if session.state == STATE_COMPLETE:
                replay = self._completed_result(session_id)
                if replay is not None:
                    return replay
            self._require_open(session)
            missing = session.missing_chunks()
            if missing:
                preview = ", ".join(str(idx) for idx in missing[:10])
                raise IncompleteUpload(
                    f"Missing {len(missing)} of {session.expected_chunk_count} chunks ({preview})"
                )
            session.state = STATE_FINALIZING
            session.last_activity_at = self._clock()

        try:
            payload = self._assemble(session)
            stored = self._ingestor.ingest(payload, session.filename, session.mime_type, metadata)
        except Exception as exc:
            with session.lock:
                if session.state == STATE_FINALIZING:
                    session.state = STATE_OPEN
                    session.last_activity_at = self._clock()
            logger.error("upload.finalize_failed id=%s: %s", session_id, exc)
            raise
        with session.lock:
            with self._lock:
                self._completed[session_id] = (self._clock(), stored)
            self._discard_locked(session, STATE_COMPLETE)
        logger.info("upload.finalize id=%s key=%s size=%d", session_id, stored.key, stored.size)
        return stored

    def abort(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound("Upload session not found")
        with session.lock:
            self._require_open(session)
            self._discard_locked(session, STATE_ABORTED)
        logger.info("upload.abort id=%s", session_id)

    # ------------------------------------------------------------------ Expiry
    def expire_stale_sessions(self, now: Optional[float] = None) -> int:
        moment = self._clock() if now is None else now
        with self._lock:
            candidates = list(self._sessions.values())
            for session_id, (completed_at, _) in list(self._completed.items()):
                if moment - completed_at > self._session_timeout:
                    del self._completed[session_id]
        removed = sum(1 for session in candidates if self._expire_if_stale(session, moment))
        if removed:
            logger.info("upload.expire removed=%d", removed)
        return removed

    def _expire_if_stale(self, session: UploadSession, moment: float) -> bool:
        # Only idle open sessions expire; finalizing ones are never swept.
        with session.lock:
            if session.state != STATE_OPEN:
                return False
            if moment - session.last_activity_at <= self._session_timeout:
                return False
            self._discard_locked(session, STATE_EXPIRED)
        return True

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self._cleanup_interval):
            try:
                self.expire_stale_sessions()
            except Exception:  # pragma: no cover - keep the sweeper alive
                logger.exception("Upload session sweep failed")

    # ------------------------------------------------------------------ State checks
    def _check_live(self, session: UploadSession) -> None:
        if session.state == STATE_EXPIRED:
            raise SessionExpired("Upload session expired")
        if session.state in (STATE_ABORTED, STATE_COMPLETE):
            raise SessionNotFound("Upload session not found")

    def _require_open(self, session: UploadSession) -> None:
        self._check_live(session)
        if session.state != STATE_OPEN:
            raise InvalidRequest(
                f"Upload session is {session.state}",
                code="session_busy",
                status=409,
            )

    def _completed_result(self, session_id: str) -> Optional[StoredObject]:
        with self._lock:
            entry = self._completed.get(session_id)
        return entry[1] if entry is not None else None

    # ------------------------------------------------------------------ Spool helpers
    def _write_spool(self, target: Path, data: bytes) -> None:
        temp_path = target.with_suffix(".tmp")
        try:
            with temp_path.open("wb") as handle:
                handle.write(data)
            temp_path.replace(target)
        except OSError as exc:
            logger.error("Failed to spool chunk %s: %s", target, exc)
            raise UploadError("Unable to store chunk", code="chunk_write_failed", status=500)

    def _assemble(self, session: UploadSession) -> bytearray:
        buffer = bytearray()
        try:
            for index in range(session.expected_chunk_count):
                buffer.extend(session.chunk_path(index).read_bytes())
        except OSError as exc:
            logger.error("Failed to read spooled chunks for %s: %s", session.session_id, exc)
            raise UploadError(
                "Unable to read spooled chunks",
                code="assemble_failed",
                status=500,
            ) from exc
        if len(buffer) != session.total_size:
            raise IncompleteUpload(
                f"Assembled {len(buffer)} bytes, expected {session.total_size}"
            )
        return buffer

    def _discard_locked(self, session: UploadSession, state: str) -> None:
        # Caller holds session.lock; the registry lock is always taken second.
        with self._lock:
            self._sessions.pop(session.session_id, None)
        session.state = state
        session.chunk_lengths.clear()
        shutil.rmtree(session.spool_dir, ignore_errors=True)
        if os.path.exists(session.spool_dir):  # pragma: no cover - depends on fs permissions
            logger.warning("Spool directory %s could not be removed", session.spool_dir)
