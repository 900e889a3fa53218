"""Injectable tuning values for the monitoring core."""
from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from ccpulse import config

DEFAULT_COMPLETION_KEYWORDS: tuple[str, ...] = (
    "completed",
    "finished",
    "done",
    "successfully",
    "all set",
)
DEFAULT_ERROR_KEYWORDS: tuple[str, ...] = (
    "error",
    "failed",
    "failure",
    "problem",
    "issue",
    "exception",
)
DEFAULT_SOLICITATION_PHRASES: tuple[str, ...] = (
    "what would you like",
    "how can i help",
    "would you like me to",
    "should i",
    "do you want",
    "let me know",
    "what do you think",
    "any questions",
)
# Tool names (lower-cased) whose results the assistant reads back and analyses.
DEFAULT_INSPECT_TOOLS: tuple[str, ...] = (
    "read",
    "grep",
    "glob",
    "ls",
    "notebookread",
    "webfetch",
    "websearch",
)

# Debounce windows outside this range either stack OS events or delay updates.
MIN_DEBOUNCE_MS = 200
MAX_DEBOUNCE_MS = 2000


class MonitorSettings(BaseModel):
    watch_dir: Path = Field(default_factory=lambda: config.WATCH_DIR)

    debounce_ms: int = 500
    raw_event_step_ms: int = 50
    refresh_interval_seconds: float = 5.0
    worker_threads: int = 4

    typing_threshold_seconds: float = 30.0
    recently_active_minutes: float = 5.0
    idle_minutes: float = 60.0
    inactive_minutes: float = 1440.0
    active_window_minutes: float = 60.0

    completion_keywords: tuple[str, ...] = DEFAULT_COMPLETION_KEYWORDS
    error_keywords: tuple[str, ...] = DEFAULT_ERROR_KEYWORDS
    solicitation_phrases: tuple[str, ...] = DEFAULT_SOLICITATION_PHRASES
    inspect_tools: tuple[str, ...] = DEFAULT_INSPECT_TOOLS

    cache_max_entries: int = 50
    cache_ttl_seconds: float = 300.0
    cache_max_file_bytes: int = 20_000_000

    send_timeout_seconds: float = 5.0
    notification_history_size: int = 1000

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @classmethod
    def from_config(cls) -> "MonitorSettings":
        """Build settings from the environment-driven `config` module."""
        debounce = min(MAX_DEBOUNCE_MS, max(MIN_DEBOUNCE_MS, config.DEBOUNCE_MS))
        return cls(
            watch_dir=config.WATCH_DIR,
            debounce_ms=debounce,
            raw_event_step_ms=max(1, config.RAW_EVENT_STEP_MS),
            refresh_interval_seconds=max(0.5, config.REFRESH_INTERVAL_SECONDS),
            worker_threads=max(1, config.WORKER_THREADS),
            typing_threshold_seconds=config.TYPING_THRESHOLD_SECONDS,
            recently_active_minutes=config.RECENTLY_ACTIVE_MINUTES,
            idle_minutes=config.IDLE_MINUTES,
            inactive_minutes=config.INACTIVE_MINUTES,
            active_window_minutes=config.ACTIVE_WINDOW_MINUTES,
            cache_max_entries=max(1, config.CACHE_MAX_ENTRIES),
            cache_ttl_seconds=config.CACHE_TTL_SECONDS,
            cache_max_file_bytes=config.CACHE_MAX_FILE_BYTES,
            send_timeout_seconds=config.SEND_TIMEOUT_SECONDS,
            notification_history_size=max(1, config.NOTIFICATION_HISTORY_SIZE),
        )
