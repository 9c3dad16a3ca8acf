import json
import logging
import logging.handlers

import pytest

import config_manager
from system_monitor import get_system_stats


@pytest.fixture
def config_paths(tmp_path, monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    return {
        "config_path": tmp_path / "config.json",
        "default_path": tmp_path / "config.default.json",
        "env_path": tmp_path / ".env",
    }


class TestLoadConfig:
    def test_first_run_writes_defaults(self, config_paths):
        cfg = config_manager.load_config(**config_paths)
        assert cfg["STORAGE_BACKEND"] == "local"
        assert cfg["UPLOAD_SESSION_TIMEOUT_SECS"] == 86400
        written = json.loads(config_paths["config_path"].read_text(encoding="utf-8"))
        assert written["THUMB_TIMEOUT_SECS"] == 60
        env_text = config_paths["env_path"].read_text(encoding="utf-8")
        assert "AWS_ACCESS_KEY_ID=" in env_text
        assert "AWS_SECRET_ACCESS_KEY=" in env_text

    def test_user_values_and_nested_merge(self, config_paths):
        config_paths["config_path"].write_text(
            json.dumps({"S3_BUCKET": "team-feed", "logging": {"level": "DEBUG"}}),
            encoding="utf-8",
        )
        cfg = config_manager.load_config(**config_paths)
        assert cfg["S3_BUCKET"] == "team-feed"
        assert cfg["logging"]["level"] == "DEBUG"
        assert cfg["logging"]["retention_days"] == 7

    def test_environment_overrides(self, config_paths, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "s3")
        monkeypatch.setenv("UPLOAD_ALLOWED_MIME_TYPES", "image/png, video/mp4")
        cfg = config_manager.load_config(**config_paths)
        assert cfg["STORAGE_BACKEND"] == "s3"
        assert cfg["UPLOAD_ALLOWED_MIME_TYPES"] == ["image/png", "video/mp4"]

    def test_env_file_does_not_override_real_environment(self, config_paths, monkeypatch):
        config_paths["env_path"].write_text("S3_BUCKET=from-file\nS3_REGION=eu-west-1\n", encoding="utf-8")
        monkeypatch.setenv("S3_BUCKET", "from-env")
        # Empty values count as unset; monkeypatch removes whatever .env loads.
        monkeypatch.setenv("S3_REGION", "")
        cfg = config_manager.load_config(**config_paths)
        assert cfg["S3_BUCKET"] == "from-env"
        assert cfg["S3_REGION"] == "eu-west-1"

    def test_merge_with_defaults_is_in_memory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = config_manager.merge_with_defaults({"THUMB_REMUX_MIME_TYPES": "video/quicktime"})
        assert cfg["THUMB_REMUX_MIME_TYPES"] == ["video/quicktime"]
        assert cfg["UPLOAD_CHUNK_SIZE_MB"] == 10
        assert not (tmp_path / "config.json").exists()


@pytest.mark.parametrize(
    "value,expected",
    [
        (["a", "a", " b "], ["a", "b"]),
        ('["x", "y"]', ["x", "y"]),
        ("x,,y", ["x", "y"]),
        (None, []),
    ],
)
def test_normalize_list(value, expected):
    assert config_manager.normalize_list(value) == expected


def test_configure_logging_adds_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "ingest.log"
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        cfg = {"logging": {"level": "DEBUG", "file": str(log_file), "retention_days": 3}}
        config_manager.configure_logging(cfg)
        config_manager.configure_logging(cfg)
        added = [h for h in root.handlers if h not in before]
        rotating = [h for h in added if isinstance(h, logging.handlers.TimedRotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].backupCount == 3
        assert root.level == logging.DEBUG
    finally:
        for handler in [h for h in root.handlers if h not in before]:
            root.removeHandler(handler)
            handler.close()
        root.setLevel(level)


def test_system_stats_reports_requested_paths(tmp_path):
    stats = get_system_stats([tmp_path, tmp_path / "not-yet-created", tmp_path])
    assert [disk["path"] for disk in stats["disks"]] == [str(tmp_path), str(tmp_path / "not-yet-created")]
    assert stats["disks"][1]["total"] is not None
    assert stats["memory_total"] is not None
