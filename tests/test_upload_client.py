"""End-to-end tests for the upload client against the real Flask app.

Sizes are scaled down by a factor of 1 MB -> 1 KB: a 10 KB chunk size with a
30 KB threshold behaves exactly like the 10 MB / 30 MB production defaults.
"""

import io
from unittest.mock import MagicMock

import pytest
import requests

import app as app_module
import config_manager
from conftest import FakeClock, make_png
from media_store import THUMBNAIL_PREFIX
from upload_client import UploadAborted, UploadClient, UploadClientError

KB = 1024
CHUNK = 10 * KB
THRESHOLD = 30 * KB


def _payload(size: int) -> bytes:
    return bytes((i * 31) % 256 for i in range(size))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def upload_client(http_session, sleeps):
    return UploadClient(
        "http://testserver",
        chunk_size=CHUNK,
        size_threshold=THRESHOLD,
        max_retries=3,
        retry_delay=1.0,
        session=http_session,
        sleep=sleeps.append,
    )


@pytest.fixture
def progress_log():
    events = []
    return events


class TestDirectPath:
    def test_small_file_uses_single_request(self, upload_client, http_adapter, client, tmp_path):
        png = make_png((64, 64))
        source = tmp_path / "photo.png"
        source.write_bytes(png)

        result = upload_client.upload(source)

        assert not result.chunked
        assert result.filename == "photo.png"
        assert result.is_video is False
        assert [call for call in http_adapter.calls] == [("POST", "/api/uploads")]
        assert client.get(result.media_url).data == png

    def test_threshold_is_inclusive(self, upload_client, http_adapter):
        upload_client.upload(_payload(THRESHOLD), filename="exact.mp4", mime_type="video/mp4")
        assert http_adapter.calls == [("POST", "/api/uploads")]


class TestChunkedPath:
    def test_forty_five_unit_file_sends_five_chunks(self, upload_client, http_adapter, client, progress_log):
        data = _payload(45 * KB)
        result = upload_client.upload(
            data,
            filename="lift.mp4",
            mime_type="video/mp4",
            progress_callback=progress_log.append,
            finalize_payload={"postType": "workout"},
        )

        assert result.chunked
        assert result.is_video
        assert result.thumbnail_url
        assert http_adapter.chunk_indexes() == [0, 1, 2, 3, 4]
        assert http_adapter.calls[0] == ("POST", "/api/uploads/sessions")
        assert http_adapter.calls[-1][1].endswith("/finalize")
        assert client.get(result.media_url).data == data

    def test_progress_is_capped_until_finalize(self, upload_client, progress_log):
        upload_client.upload(
            _payload(45 * KB),
            filename="lift.mp4",
            mime_type="video/mp4",
            progress_callback=progress_log.append,
        )
        uploading = [event.progress for event in progress_log if event.status == "uploading"]
        assert uploading == sorted(uploading)
        assert max(uploading) <= 90
        assert [(e.progress, e.status) for e in progress_log[-2:]] == [(90, "processing"), (100, "complete")]

    def test_transient_failure_retries_same_chunk(self, upload_client, http_adapter, sleeps):
        http_adapter.fail("PATCH", "chunkIndex=2", times=2)
        upload_client.upload(_payload(45 * KB), filename="lift.mp4", mime_type="video/mp4")
        assert http_adapter.chunk_indexes() == [0, 1, 2, 2, 2, 3, 4]
        assert sleeps == [1.0, 2.0]

    def test_exhausted_retries_keep_session_for_resume(self, upload_client, http_adapter, client):
        data = _payload(45 * KB)
        http_adapter.fail("PATCH", "chunkIndex=2", times=4)
        with pytest.raises(UploadClientError) as excinfo:
            upload_client.upload(data, filename="lift.mp4", mime_type="video/mp4")
        session_id = excinfo.value.session_id
        assert session_id
        assert excinfo.value.code == "network_error"

        http_adapter.calls.clear()
        result = upload_client.upload(data, filename="lift.mp4", mime_type="video/mp4", session_id=session_id)

        assert http_adapter.calls[0] == ("GET", f"/api/uploads/sessions/{session_id}")
        assert http_adapter.chunk_indexes() == [2, 3, 4]
        assert client.get(result.media_url).data == data

    def test_cancellation_aborts_before_finalize(self, upload_client, http_adapter, client):
        sent = []

        def cancel():
            return len(http_adapter.chunk_indexes()) >= 2

        with pytest.raises(UploadAborted) as excinfo:
            upload_client.upload(
                _payload(45 * KB),
                filename="lift.mp4",
                mime_type="video/mp4",
                cancel_callback=cancel,
                progress_callback=sent.append,
            )
        assert excinfo.value.code == "aborted"
        assert not any(path.endswith("/finalize") for _, path in http_adapter.calls)
        assert http_adapter.chunk_indexes() == [0, 1]
        assert all(event.status == "uploading" for event in sent)

        snapshot = client.get(f"/api/uploads/sessions/{excinfo.value.session_id}").get_json()
        assert snapshot["state"] == "open"
        assert snapshot["receivedChunks"] == [0, 1]

    def test_client_errors_fail_fast(self, upload_client, http_adapter, sleeps):
        with pytest.raises(UploadClientError) as excinfo:
            upload_client.upload(_payload(45 * KB), filename="lift.exe", mime_type="application/x-msdownload")
        assert excinfo.value.status == 400
        assert excinfo.value.code == "invalid_type"
        assert len(http_adapter.calls) == 1
        assert sleeps == []

    def test_stream_source(self, upload_client, http_adapter):
        stream = io.BytesIO(_payload(35 * KB))
        stream.name = "clip.mp4"
        result = upload_client.upload(stream, mime_type="video/mp4")
        assert result.filename == "clip.mp4"
        assert http_adapter.chunk_indexes() == [0, 1, 2, 3]
        assert not stream.closed

class TestFinalizeRecovery:
    """Finalize responses that never arrive, and finalizes still in flight."""

    def _services(self, flask_app):
        return flask_app.extensions[app_module.EXTENSION_KEY]

    def _filled_session(self, sessions, data):
        session_id = sessions.open_session("lift.mp4", "video/mp4", len(data), CHUNK)
        for index in range(0, len(data), CHUNK):
            sessions.write_chunk(session_id, index // CHUNK, data[index : index + CHUNK])
        return session_id

    def test_lost_finalize_response_is_replayed(self, upload_client, http_adapter, flask_app, client):
        data = _payload(45 * KB)
        http_adapter.lose_response("POST", "/finalize")

        result = upload_client.upload(data, filename="lift.mp4", mime_type="video/mp4")

        finalizes = [path for method, path in http_adapter.calls if path.endswith("/finalize")]
        assert len(finalizes) == 2
        store = self._services(flask_app).store
        blobs = [key for key in store.list("uploads/") if not key.startswith(f"{THUMBNAIL_PREFIX}/")]
        assert blobs == [result.key]
        assert client.get(result.media_url).data == data

    def test_busy_finalize_is_polled_until_complete(self, http_session, http_adapter, flask_app, client):
        data = _payload(25 * KB)
        sessions = self._services(flask_app).sessions
        session_id = self._filled_session(sessions, data)
        sessions.get_session(session_id).state = "finalizing"
        waits = []

        def sleep(seconds):
            waits.append(seconds)
            # The in-flight finalize completes while the client waits.
            sessions.get_session(session_id).state = "open"
            sessions.finalize(session_id)

        upload_client = UploadClient(
            "http://testserver",
            chunk_size=CHUNK,
            retry_delay=0.5,
            session=http_session,
            sleep=sleep,
        )
        result = upload_client.upload(data, filename="lift.mp4", mime_type="video/mp4", session_id=session_id)

        assert http_adapter.chunk_indexes() == []
        assert [call[0] for call in http_adapter.calls] == ["GET", "POST", "GET"]
        assert waits == [0.5]
        assert result.chunked
        assert client.get(result.media_url).data == data

    def test_resume_of_completed_session_returns_result(self, upload_client, http_adapter, flask_app):
        data = _payload(25 * KB)
        sessions = self._services(flask_app).sessions
        session_id = self._filled_session(sessions, data)
        stored = sessions.finalize(session_id)

        result = upload_client.upload(data, filename="lift.mp4", mime_type="video/mp4", session_id=session_id)

        assert http_adapter.calls == [("GET", f"/api/uploads/sessions/{session_id}")]
        assert result.key == stored.key

    def test_finalize_that_never_finishes_times_out(self, http_session, flask_app):
        data = _payload(25 * KB)
        sessions = self._services(flask_app).sessions
        session_id = self._filled_session(sessions, data)
        sessions.get_session(session_id).state = "finalizing"
        clock = FakeClock(0.0)
        upload_client = UploadClient(
            "http://testserver",
            chunk_size=CHUNK,
            retry_delay=1.0,
            finalize_wait=5,
            session=http_session,
            sleep=clock.advance,
            clock=clock,
        )

        with pytest.raises(UploadClientError) as excinfo:
            upload_client.upload(data, filename="lift.mp4", mime_type="video/mp4", session_id=session_id)

        assert excinfo.value.code == "finalize_timeout"
        assert excinfo.value.session_id == session_id
        assert clock.now == 5.0


class TestConfiguration:
    def test_from_config_scales_megabytes(self):
        cfg = config_manager.merge_with_defaults({"UPLOAD_CHUNK_SIZE_MB": 2, "CLIENT_FINALIZE_WAIT_SECS": 45})
        client = UploadClient.from_config("http://media.local/", cfg, session=MagicMock(spec=requests.Session, headers={}))
        assert client.base_url == "http://media.local"
        assert client.chunk_size == 2 * 1024 * 1024
        assert client.size_threshold == 30 * 1024 * 1024
        assert client.finalize_wait == 45.0

    def test_aborted_error_matches_server_code(self):
        error = UploadAborted(session_id="abc")
        assert (error.code, error.status, error.session_id) == ("aborted", 499, "abc")


class TestServerErrors:
    def _response(self, status, body=b"{}"):
        response = requests.Response()
        response.status_code = status
        response._content = body
        response.headers["Content-Type"] = "application/json"
        return response

    def test_server_errors_are_retried(self, sleeps):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        session.request.side_effect = [
            self._response(503),
            self._response(429),
            self._response(200, b'{"mediaUrl": "/api/media/uploads/1-aa.png", "filename": "a.png", "isVideo": false}'),
        ]
        client = UploadClient("http://media.local", session=session, sleep=sleeps.append)
        result = client.upload(b"png", filename="a.png", mime_type="image/png")
        assert result.media_url == "/api/media/uploads/1-aa.png"
        assert sleeps == [1.0, 2.0]
        assert session.request.call_count == 3

    def test_persistent_server_error_surfaces_status(self, sleeps):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        session.request.return_value = self._response(503, b'{"error": "down", "code": "storage_unavailable"}')
        client = UploadClient("http://media.local", session=session, max_retries=2, sleep=sleeps.append)
        with pytest.raises(UploadClientError) as excinfo:
            client.upload(b"png", filename="a.png", mime_type="image/png")
        assert excinfo.value.status == 503
        assert excinfo.value.code == "storage_unavailable"
        assert sleeps == [1.0, 2.0]

    def test_timeouts_are_retried(self, sleeps):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        session.request.side_effect = [
            requests.Timeout("slow"),
            self._response(200, b'{"mediaUrl": "/api/media/x", "filename": "a.png", "isVideo": false}'),
        ]
        client = UploadClient("http://media.local", session=session, request_timeout=5, sleep=sleeps.append)
        client.upload(b"png", filename="a.png", mime_type="image/png")
        assert session.request.call_args.kwargs["timeout"] == 5.0
        assert sleeps == [1.0]

    def test_raw_bytes_need_a_filename(self):
        client = UploadClient("http://media.local", session=MagicMock(spec=requests.Session, headers={}))
        with pytest.raises(ValueError):
            client.upload(b"data")
