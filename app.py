import atexit
import io
import logging
import mimetypes
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from flask_socketio import SocketIO, join_room, leave_room
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.http import generate_etag

import config_manager
from media_ingest import MediaIngestor
from media_store import MediaStore, build_media_store
from system_monitor import get_system_stats
from thumbnailer import ThumbnailGenerator, build_thumbnailer
from upload_errors import InvalidRequest, UploadError
from upload_sessions import UploadSessionManager

logger = logging.getLogger(__name__)

MB = 1024 * 1024
EXTENSION_KEY = "media_ingestion"
UPLOAD_PROGRESS_EVENT = "upload_progress"
MEDIA_CACHE_CONTROL = "public, max-age=31536000, immutable"
# Multipart framing and form fields ride on top of the file itself.
REQUEST_HEADROOM_BYTES = 1 * MB

socketio = SocketIO()
_bp = Blueprint("media_ingestion", __name__)

_emit_throttle_lock = threading.Lock()
_emit_min_interval = 0.05  # seconds
_last_emit_by_room: Dict[str, float] = {}
_EMIT_ROOMS_TRACKED = 1024


@dataclass
class MediaServices:
    config: Dict[str, Any]
    store: MediaStore
    thumbnailer: ThumbnailGenerator
    ingestor: MediaIngestor
    sessions: UploadSessionManager

    def shutdown(self) -> None:
        self.sessions.stop()
        self.ingestor.shutdown()


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def safe_emit(
    event_name: str,
    data: Any,
    *,
    room: Optional[str] = None,
    to: Optional[str] = None,
    namespace: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """Emit a Socket.IO event defensively, ignoring disconnected clients."""

    # Throttled per room; the slot is reserved under the lock, the sleep happens outside it.
    target = str(to or room or "")
    with _emit_throttle_lock:
        now = time.monotonic()
        last = _last_emit_by_room.get(target)
        slot = now if last is None else max(now, last + _emit_min_interval)
        _last_emit_by_room[target] = slot
        if len(_last_emit_by_room) > _EMIT_ROOMS_TRACKED:
            for stale in [key for key, value in _last_emit_by_room.items() if value < now]:
                del _last_emit_by_room[stale]
    if slot > now:
        time.sleep(slot - now)
    try:
        socketio.emit(event_name, data, room=room, to=to, namespace=namespace, **kwargs)
    except (OSError, BrokenPipeError) as exc:  # pragma: no cover - expected on disconnects
        logger.warning(
            "[SocketIO] Tried to emit to disconnected client for event '%s': %s",
            event_name,
            exc,
        )


def build_services(cfg: Dict[str, Any], *, s3_client: Any = None) -> MediaServices:
    store = build_media_store(cfg, s3_client=s3_client)
    thumbnailer = build_thumbnailer(cfg)
    allowed = cfg.get("UPLOAD_ALLOWED_MIME_TYPES")
    ingestor = MediaIngestor(
        store,
        thumbnailer,
        allowed_mime_types=allowed or None,
        async_thumbnails=_parse_truthy(cfg.get("THUMB_ASYNC", False)),
    )
    max_upload_mb = _as_float(cfg.get("UPLOAD_MAX_MB"), 512.0)
    sessions = UploadSessionManager(
        ingestor,
        spool_dir=cfg.get("UPLOAD_SPOOL_DIR") or None,
        max_chunk_size=int(_as_float(cfg.get("UPLOAD_MAX_CHUNK_SIZE_MB"), 10.0) * MB),
        max_upload_bytes=int(max_upload_mb * MB) if max_upload_mb > 0 else None,
        session_timeout=_as_float(cfg.get("UPLOAD_SESSION_TIMEOUT_SECS"), 86400.0),
        cleanup_interval=_as_float(cfg.get("UPLOAD_CLEANUP_INTERVAL_SECS"), 900.0),
    )
    return MediaServices(
        config=cfg,
        store=store,
        thumbnailer=thumbnailer,
        ingestor=ingestor,
        sessions=sessions,
    )


def create_app(config: Optional[Dict[str, Any]] = None, *, s3_client: Any = None) -> Flask:
    """Build the Flask app and its upload services.

    With no ``config`` the on-disk ``config.json``/``.env`` pair is loaded;
    a dict is merged over the built-in defaults without touching disk.
    """

    if config is None:
        cfg = config_manager.load_config()
    else:
        cfg = config_manager.merge_with_defaults(config)
    config_manager.configure_logging(cfg)

    app = Flask(__name__)
    max_upload_mb = _as_float(cfg.get("UPLOAD_MAX_MB"), 512.0)
    if max_upload_mb > 0:
        app.config["MAX_CONTENT_LENGTH"] = int(max_upload_mb * MB) + REQUEST_HEADROOM_BYTES

    services = build_services(cfg, s3_client=s3_client)
    app.extensions[EXTENSION_KEY] = services
    app.register_blueprint(_bp)
    app.register_error_handler(RequestEntityTooLarge, _too_large_response)

    socketio.init_app(
        app,
        async_mode="threading",
        ping_timeout=120,
        ping_interval=25,
        cors_allowed_origins="*",
    )
    atexit.register(services.shutdown)
    logger.info(
        "Media ingestion ready: backend=%s spool=%s",
        services.store.backend_name,
        services.sessions.spool_dir,
    )
    return app


def get_services() -> MediaServices:
    return current_app.extensions[EXTENSION_KEY]


def _error_response(exc: UploadError):
    status = getattr(exc, "status", 400) or 400
    payload = {"error": exc.message, "code": exc.code}
    return jsonify(payload), status


def _too_large_response(exc: RequestEntityTooLarge):
    return jsonify({"error": "Request body exceeds the upload limit", "code": "too_large"}), 413


# ---------------------------------------------------------------------------
# Upload sessions
# ---------------------------------------------------------------------------


@_bp.route("/api/uploads/sessions", methods=["POST"])
def api_upload_session_open():
    payload = request.get_json(silent=True) or {}
    services = get_services()
    try:
        session_id = services.sessions.open_session(
            payload.get("filename"),
            payload.get("mimeType"),
            payload.get("totalSize"),
            payload.get("chunkSize"),
        )
        snapshot = services.sessions.status(session_id)
    except UploadError as exc:
        return _error_response(exc)
    return (
        jsonify(
            {
                "sessionId": session_id,
                "chunkSize": snapshot["chunkSize"],
                "expectedChunkCount": snapshot["expectedChunkCount"],
            }
        ),
        201,
    )


@_bp.route("/api/uploads/sessions/<session_id>", methods=["GET"])
def api_upload_session_status(session_id: str):
    try:
        snapshot = get_services().sessions.status(session_id)
    except UploadError as exc:
        return _error_response(exc)
    return jsonify(snapshot)


@_bp.route("/api/uploads/sessions/<session_id>/chunk", methods=["PATCH"])
def api_upload_session_chunk(session_id: str):
    raw_index = request.args.get("chunkIndex")
    try:
        if raw_index is None or raw_index.strip() == "":
            raise InvalidRequest("chunkIndex query parameter is required")
        data = request.get_data(cache=False)
        progress = get_services().sessions.write_chunk(session_id, raw_index, data)
    except UploadError as exc:
        return _error_response(exc)
    safe_emit(
        UPLOAD_PROGRESS_EVENT,
        {"sessionId": session_id, "chunkIndex": _as_int(raw_index, -1), "progress": progress},
        room=session_id,
    )
    return jsonify({"progress": progress})


@_bp.route("/api/uploads/sessions/<session_id>/finalize", methods=["POST"])
def api_upload_session_finalize(session_id: str):
    metadata = request.get_json(silent=True)
    if not isinstance(metadata, dict):
        metadata = {}
    try:
        stored = get_services().sessions.finalize(session_id, metadata)
    except UploadError as exc:
        return _error_response(exc)
    safe_emit(
        UPLOAD_PROGRESS_EVENT,
        {"sessionId": session_id, "progress": 100, "status": "complete", "key": stored.key},
        room=session_id,
    )
    return jsonify(stored.to_response())


@_bp.route("/api/uploads/sessions/<session_id>", methods=["DELETE"])
def api_upload_session_abort(session_id: str):
    try:
        get_services().sessions.abort(session_id)
    except UploadError as exc:
        return _error_response(exc)
    return jsonify({"ok": True})


# ---------------------------------------------------------------------------
# Direct uploads and media access
# ---------------------------------------------------------------------------


@_bp.route("/api/uploads", methods=["POST"])
def api_upload_direct():
    upload = request.files.get("file")
    try:
        if upload is None:
            raise InvalidRequest("No file was provided")
        mime_type = request.form.get("mimeType") or upload.mimetype
        metadata = {key: value for key, value in request.form.items() if key != "mimeType"}
        stored = get_services().ingestor.ingest(upload.read(), upload.filename or "", mime_type, metadata)
    except UploadError as exc:
        return _error_response(exc)
    logger.info("media.upload key=%s size=%d", stored.key, stored.size)
    return jsonify(stored.to_response())


@_bp.route("/api/media", methods=["GET"])
def api_media_list():
    prefix = request.args.get("prefix", "")
    try:
        keys = get_services().store.list(prefix)
    except UploadError as exc:
        return _error_response(exc)
    return jsonify({"prefix": prefix, "keys": keys, "count": len(keys)})


@_bp.route("/api/media/<path:key>", methods=["GET"])
def api_media_get(key: str):
    try:
        data = get_services().store.get(key)
    except UploadError as exc:
        return _error_response(exc)
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    response = send_file(
        io.BytesIO(data),
        mimetype=mimetype,
        conditional=True,
        etag=generate_etag(data),
    )
    response.headers["Cache-Control"] = MEDIA_CACHE_CONTROL
    return response


@_bp.route("/api/media/<path:key>", methods=["DELETE"])
def api_media_delete(key: str):
    try:
        get_services().ingestor.delete(key)
    except UploadError as exc:
        return _error_response(exc)
    logger.info("media.delete key=%s", key)
    return jsonify({"ok": True})


@_bp.route("/api/health", methods=["GET"])
def api_health():
    services = get_services()
    paths = [services.sessions.spool_dir]
    local_root = services.config.get("STORAGE_LOCAL_ROOT")
    if services.store.backend_name == "local" and local_root:
        paths.insert(0, local_root)
    return jsonify(
        {
            "status": "ok",
            "storage": services.store.describe(),
            "openSessions": services.sessions.open_count(),
            "system": get_system_stats(paths),
        }
    )


# ---------------------------------------------------------------------------
# Socket.IO progress rooms
# ---------------------------------------------------------------------------


def _session_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("sessionId") or "").strip()
    if isinstance(payload, str):
        return payload.strip()
    return ""


@socketio.on("upload_watch")
def handle_upload_watch(payload):
    session_id = _session_from_payload(payload)
    if not session_id:
        return
    join_room(session_id)
    logger.debug("Client %s watching upload %s", request.sid, session_id)


@socketio.on("upload_unwatch")
def handle_upload_unwatch(payload):
    session_id = _session_from_payload(payload)
    if not session_id:
        return
    leave_room(session_id)
