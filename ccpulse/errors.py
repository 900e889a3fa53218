"""Error taxonomy for the ingestion and delivery paths."""
from __future__ import annotations

from dataclasses import dataclass


class MonitorError(Exception):
    """Base class for monitor failures."""


class ReadError(MonitorError):
    """Raised when a conversation file cannot be read.

    Never cached; the next watch event for the path retries the read.
    """

    def __init__(self, path: str, cause: BaseException | None = None) -> None:
        super().__init__(f"Failed to read {path}: {cause}")
        self.path = path
        self.cause = cause


class WatchError(MonitorError):
    """Raised when a watched path becomes inaccessible (or cannot be watched at all)."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot watch {path}: {reason}")
        self.path = path
        self.reason = reason


class DeliveryFailure(MonitorError):
    """Raised when a message cannot be pushed to a live connection."""

    def __init__(self, connection_id: str, cause: BaseException | str | None = None) -> None:
        super().__init__(f"Delivery to {connection_id} failed: {cause}")
        self.connection_id = connection_id
        self.cause = cause


@dataclass(frozen=True)
class ParseWarning:
    """A single malformed line that was skipped while parsing."""

    line_number: int
    reason: str
    excerpt: str = ""

    def as_dict(self) -> dict:
        return {"lineNumber": self.line_number, "reason": self.reason, "excerpt": self.excerpt}
