"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(value: datetime | None) -> str:
    if value is None:
        return ""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Convert mixed timestamp inputs (ISO strings, epoch seconds/millis) into aware UTC datetimes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = float(value)
        # Epoch milliseconds as written by JS-based tooling.
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except (ValueError, TypeError):
            return None
    return None


def mtime_to_datetime(mtime_ns: int) -> datetime:
    return datetime.fromtimestamp(mtime_ns / 1_000_000_000, timezone.utc)
