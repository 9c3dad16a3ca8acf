"""Pytest configuration and fixtures for the media ingestion tests."""

import io
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest
import requests
from PIL import Image
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

import app as app_module
import thumbnailer as thumbnailer_module
from media_ingest import MediaIngestor
from media_store import LocalBackend, MediaStore, RetryPolicy
from thumbnailer import ThumbnailGenerator
from upload_sessions import UploadSessionManager


class FakeClock:
    """Manually advanced clock for session expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlaskTestAdapter(BaseAdapter):
    """Route ``requests`` calls into a Flask test client.

    ``failures`` maps ``(METHOD, path-fragment)`` to a number of calls that
    should raise ``requests.ConnectionError`` before reaching the app.
    ``lost`` does the same after the app has handled the request, the way a
    read timeout loses a response the server already acted on.
    """

    def __init__(self, client: Any) -> None:
        super().__init__()
        self.client = client
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self.lost: Dict[Tuple[str, str], int] = {}

    def fail(self, method: str, fragment: str, times: int = 1) -> None:
        self.failures[(method.upper(), fragment)] = times

    def lose_response(self, method: str, fragment: str, times: int = 1) -> None:
        self.lost[(method.upper(), fragment)] = times

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        self.calls.append((request.method, path))
        for (method, fragment), remaining in list(self.failures.items()):
            if remaining > 0 and method == request.method and fragment in path:
                self.failures[(method, fragment)] = remaining - 1
                raise requests.ConnectionError(f"simulated network failure for {path}")

        headers = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in {"content-length", "content-type"}
        }
        body = request.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        flask_response = self.client.open(
            path,
            method=request.method,
            data=body,
            headers=headers,
            content_type=request.headers.get("Content-Type"),
        )
        for (method, fragment), remaining in list(self.lost.items()):
            if remaining > 0 and method == request.method and fragment in path:
                self.lost[(method, fragment)] = remaining - 1
                raise requests.ReadTimeout(f"simulated lost response for {path}")

        response = requests.Response()
        response.status_code = flask_response.status_code
        response._content = flask_response.get_data()
        response.headers = CaseInsensitiveDict(dict(flask_response.headers.items()))
        response.url = request.url
        response.request = request
        response.encoding = "utf-8"
        return response

    def close(self) -> None:
        pass

    def chunk_indexes(self) -> List[int]:
        indexes = []
        for method, path in self.calls:
            if method == "PATCH" and "chunkIndex=" in path:
                indexes.append(int(path.rsplit("chunkIndex=", 1)[1]))
        return indexes


def make_png(size: Tuple[int, int] = (1200, 800), color=(200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def no_ffmpeg(monkeypatch):
    """Pretend ffmpeg is not installed so video thumbnails use the placeholder."""
    monkeypatch.setattr(thumbnailer_module.shutil, "which", lambda name: None)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def retry_sleeps() -> List[float]:
    return []


@pytest.fixture
def retry_policy(retry_sleeps) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, sleep=retry_sleeps.append)


@pytest.fixture
def local_store(tmp_path) -> MediaStore:
    return MediaStore(LocalBackend(tmp_path / "store"))


@pytest.fixture
def thumbnail_generator(no_ffmpeg) -> ThumbnailGenerator:
    return ThumbnailGenerator()


@pytest.fixture
def ingestor(local_store, thumbnail_generator):
    instance = MediaIngestor(local_store, thumbnail_generator)
    yield instance
    instance.shutdown()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_manager(ingestor, tmp_path, clock):
    manager = UploadSessionManager(
        ingestor,
        spool_dir=tmp_path / "spool",
        max_chunk_size=4096,
        max_upload_bytes=1024 * 1024,
        session_timeout=3600,
        cleanup_interval=60,
        autostart=False,
        clock=clock,
    )
    yield manager
    manager.stop()


@pytest.fixture
def make_app(tmp_path, monkeypatch, no_ffmpeg):
    """Factory building an isolated app; services are shut down afterwards."""

    monkeypatch.setattr(app_module, "_emit_min_interval", 0.0)
    created = []

    def _factory(overrides: Optional[Dict[str, Any]] = None):
        config: Dict[str, Any] = {
            "STORAGE_BACKEND": "local",
            "STORAGE_LOCAL_ROOT": str(tmp_path / "store"),
            "UPLOAD_SPOOL_DIR": str(tmp_path / "spool"),
            "UPLOAD_MAX_MB": 16,
            "logging": {"level": "WARNING", "file": ""},
        }
        config.update(overrides or {})
        flask_app = app_module.create_app(config)
        flask_app.config["TESTING"] = True
        created.append(flask_app)
        return flask_app

    yield _factory
    for flask_app in created:
        flask_app.extensions[app_module.EXTENSION_KEY].shutdown()


@pytest.fixture
def flask_app(make_app):
    return make_app()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def http_adapter(client) -> FlaskTestAdapter:
    return FlaskTestAdapter(client)


@pytest.fixture
def http_session(http_adapter) -> requests.Session:
    session = requests.Session()
    session.mount("http://testserver", http_adapter)
    return session
