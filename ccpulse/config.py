"""CCPulse configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value or not value.strip():
        return default
    return Path(value.strip()).expanduser()


# Root directory holding the assistant's per-project JSONL transcripts
WATCH_DIR = _env_path("CCPULSE_WATCH_DIR", Path.home() / ".claude" / "projects")

# Watcher / ingestion
DEBOUNCE_MS = _env_int("CCPULSE_DEBOUNCE_MS", 500)
RAW_EVENT_STEP_MS = _env_int("CCPULSE_RAW_EVENT_STEP_MS", 50)
REFRESH_INTERVAL_SECONDS = _env_float("CCPULSE_REFRESH_INTERVAL_SECONDS", 5.0)
WORKER_THREADS = _env_int("CCPULSE_WORKER_THREADS", 4)

# State inference thresholds
TYPING_THRESHOLD_SECONDS = _env_float("CCPULSE_TYPING_THRESHOLD_SECONDS", 30.0)
RECENTLY_ACTIVE_MINUTES = _env_float("CCPULSE_RECENTLY_ACTIVE_MINUTES", 5.0)
IDLE_MINUTES = _env_float("CCPULSE_IDLE_MINUTES", 60.0)
INACTIVE_MINUTES = _env_float("CCPULSE_INACTIVE_MINUTES", 1440.0)
ACTIVE_WINDOW_MINUTES = _env_float("CCPULSE_ACTIVE_WINDOW_MINUTES", 60.0)

# Content cache
CACHE_MAX_ENTRIES = _env_int("CCPULSE_CACHE_MAX_ENTRIES", 50)
CACHE_TTL_SECONDS = _env_float("CCPULSE_CACHE_TTL_SECONDS", 300.0)
CACHE_MAX_FILE_BYTES = _env_int("CCPULSE_CACHE_MAX_FILE_BYTES", 20_000_000)

# Notifications / live connections
SEND_TIMEOUT_SECONDS = _env_float("CCPULSE_SEND_TIMEOUT_SECONDS", 5.0)
NOTIFICATION_HISTORY_SIZE = _env_int("CCPULSE_NOTIFICATION_HISTORY_SIZE", 1000)

# Observability
OTEL_ENABLED = _env_bool("CCPULSE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CCPULSE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CCPULSE_OTEL_SERVICE_NAME", "ccpulse")
PROM_PORT = _env_int("CCPULSE_PROM_PORT", 9465)

# Server settings
HOST = os.getenv("CCPULSE_HOST", "127.0.0.1")
PORT = _env_int("CCPULSE_PORT", 8010)

# CORS
FRONTEND_ORIGIN = os.getenv("CCPULSE_FRONTEND_ORIGIN", "http://localhost:3000")
