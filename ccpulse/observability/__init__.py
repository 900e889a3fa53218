"""Observability helpers."""

from ccpulse.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_parse_warnings,
    record_state_change,
    record_delivery_failure,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parse_warnings",
    "record_state_change",
    "record_delivery_failure",
]
