import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.json")
DEFAULT_CONFIG_FILE = Path("config.default.json")
ENV_FILE = Path(".env")

DEFAULT_ENV_PLACEHOLDERS: Dict[str, str] = {
    "AWS_ACCESS_KEY_ID": "",
    "AWS_SECRET_ACCESS_KEY": "",
}

DEFAULT_CONFIG_FALLBACK: Dict[str, Any] = {
    "STORAGE_BACKEND": "local",
    "STORAGE_LOCAL_ROOT": "./media_store",
    "STORAGE_CACHE_ENABLED": True,
    "STORAGE_CACHE_DIR": "./media_cache",
    "S3_BUCKET": "",
    "S3_ENDPOINT_URL": "",
    "S3_REGION": "us-east-1",
    "S3_PREFIX": "",
    "STORAGE_RETRY_ATTEMPTS": 3,
    "STORAGE_RETRY_BASE_DELAY": 1.0,
    "STORAGE_RETRY_MAX_DELAY": 30.0,
    "STORAGE_REQUEST_TIMEOUT": 60,
    "UPLOAD_SIZE_THRESHOLD_MB": 30,
    "UPLOAD_CHUNK_SIZE_MB": 10,
    "UPLOAD_MAX_CHUNK_SIZE_MB": 10,
    "UPLOAD_MAX_MB": 512,
    "UPLOAD_SPOOL_DIR": "./temp-uploads",
    "UPLOAD_SESSION_TIMEOUT_SECS": 86400,
    "UPLOAD_CLEANUP_INTERVAL_SECS": 900,
    "UPLOAD_ALLOWED_MIME_TYPES": [
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
    ],
    "THUMB_MAX_DIMENSION": 600,
    "THUMB_QUALITY": 80,
    "THUMB_VIDEO_WIDTH": 600,
    "THUMB_VIDEO_HEIGHT": 400,
    "THUMB_SEEK_SECONDS": 1.0,
    "THUMB_TIMEOUT_SECS": 60,
    "THUMB_REMUX_MIME_TYPES": [
        "video/quicktime",
        "video/3gpp",
        "video/3gpp2",
        "video/x-msvideo",
        "video/x-ms-wmv",
    ],
    "THUMB_ASYNC": False,
    "CLIENT_REQUEST_TIMEOUT": 60,
    "CLIENT_MAX_RETRIES": 3,
    "CLIENT_RETRY_DELAY": 1.0,
    "CLIENT_FINALIZE_WAIT_SECS": 300,
    "logging": {
        "level": "INFO",
        "file": "",
        "retention_days": 7,
    },
}

LIST_KEYS = ("UPLOAD_ALLOWED_MIME_TYPES", "THUMB_REMUX_MIME_TYPES")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def ensure_env_file(env_path: Path = ENV_FILE, placeholders: Optional[Dict[str, str]] = None) -> None:
    """Ensure a .env file exists and includes placeholders for known keys."""

    placeholders = placeholders or DEFAULT_ENV_PLACEHOLDERS
    env_path = Path(env_path)
    existing_lines: List[str]

    if env_path.exists():
        existing_lines = env_path.read_text(encoding="utf-8").splitlines()
    else:
        existing_lines = ["# Auto-generated .env"]

    existing_keys = _extract_env_keys(existing_lines)
    missing = [key for key in placeholders if key not in existing_keys]

    if not missing and env_path.exists():
        return

    if missing:
        for key in missing:
            existing_lines.append(f"{key}={placeholders[key]}")

    env_path.write_text("\n".join(existing_lines) + "\n", encoding="utf-8")


def _extract_env_keys(lines: Sequence[str]) -> List[str]:
    keys: List[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            continue
        key = stripped.split("=", 1)[0].strip()
        if key:
            keys.append(key)
    return keys


def load_env_file(env_path: Path = ENV_FILE) -> Dict[str, str]:
    """Populate os.environ with values from a .env file without overriding existing env vars."""

    env_path = Path(env_path)
    if not env_path.is_file():
        return {}
    loaded: Dict[str, str] = {}
    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, raw_value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = raw_value.strip().strip('"').strip("'")
        if os.environ.get(key) not in (None, ""):
            continue
        os.environ[key] = value
        loaded[key] = value
    return loaded


def ensure_config_file(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    default_fallback: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Ensure config.json exists and contains all keys from config.default.json."""

    default_data = _load_json(default_path)
    if not default_data:
        default_data = dict(default_fallback or DEFAULT_CONFIG_FALLBACK)

    config_path = Path(config_path)
    if config_path.exists():
        config_data = _load_json(config_path)
        if not config_data:
            config_data = {}
    else:
        config_data = {}

    merged = dict(config_data)
    if _merge_defaults(merged, default_data):
        _write_json(config_path, merged)
    elif not config_path.exists():
        _write_json(config_path, merged)

    return merged


def load_config(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    env_path: Path = ENV_FILE,
) -> Dict[str, Any]:
    """Return the merged configuration with environment overrides applied."""

    ensure_env_file(env_path)
    load_env_file(env_path)
    ensure_config_file(config_path, default_path)

    default_data = _load_json(default_path) or dict(DEFAULT_CONFIG_FALLBACK)
    config_data = _load_json(config_path) or {}

    merged = _deep_merge(default_data, config_data)

    env_overrides = _collect_environment_overrides(merged)
    for key, value in env_overrides.items():
        merged[key] = value

    for key in LIST_KEYS:
        if key in merged:
            merged[key] = normalize_list(merged.get(key))
    return merged


def merge_with_defaults(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the built-in defaults overlaid with ``overrides`` without touching disk."""

    merged = _deep_merge(dict(DEFAULT_CONFIG_FALLBACK), dict(overrides or {}))
    for key in LIST_KEYS:
        if key in merged:
            merged[key] = normalize_list(merged.get(key))
    return merged


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Apply the ``logging`` section: root level plus an optional rotating file."""

    logging_cfg = cfg.get("logging") or {}
    level_name = str(logging_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    log_file = str(logging_cfg.get("file") or "").strip()
    if not log_file:
        return
    target = Path(log_file).expanduser()
    for existing in root.handlers:
        if isinstance(existing, logging.handlers.TimedRotatingFileHandler) and existing.baseFilename == os.path.abspath(target):
            return
    try:
        retention = max(1, int(logging_cfg.get("retention_days") or 7))
    except (TypeError, ValueError):
        retention = 7
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            target,
            when="midnight",
            backupCount=retention,
            encoding="utf-8",
        )
    except OSError as exc:
        logger.warning("Unable to open log file '%s': %s", target, exc)
        return
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


def normalize_list(value: Any) -> List[str]:
    """Accept a JSON list, a JSON-encoded string, or a comma separated string."""

    if isinstance(value, (list, tuple)):
        candidates = [str(item).strip() for item in value]
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            candidates = []
        elif text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                candidates = [str(item).strip() for item in parsed]
            else:
                candidates = [segment.strip() for segment in text.strip("[]").split(",")]
        else:
            candidates = [segment.strip() for segment in text.split(",")]
    else:
        candidates = []
    cleaned: List[str] = []
    seen: set[str] = set()
    for item in candidates:
        if not item or item in seen:
            continue
        seen.add(item)
        cleaned.append(item)
    return cleaned


def _collect_environment_overrides(base: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in base.keys():
        env_value = os.getenv(key)
        if env_value is None or env_value == "":
            continue
        if key in LIST_KEYS:
            overrides[key] = normalize_list(env_value)
        else:
            overrides[key] = env_value
    return overrides


def _deep_merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key in defaults.keys() | overrides.keys():
        default_value = defaults.get(key)
        override_value = overrides.get(key)
        if isinstance(default_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(default_value, override_value)
        elif override_value is not None:
            result[key] = override_value
        else:
            result[key] = default_value
    return result


def _merge_defaults(target: Dict[str, Any], defaults: Dict[str, Any]) -> bool:
    changed = False
    for key, value in defaults.items():
        if key not in target:
            target[key] = value
            changed = True
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            if _merge_defaults(target[key], value):
                changed = True
    return changed


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    path = Path(path)
    try:
        if not path.is_file():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load JSON config '%s': %s", path, exc)
        return None


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path = Path(path)
    try:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
    except OSError as exc:
        logger.warning("Failed to write JSON config '%s': %s", path, exc)
