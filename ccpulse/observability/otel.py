"""OpenTelemetry + Prometheus fallback wiring for the CCPulse monitor."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from ccpulse import config

logger = logging.getLogger("ccpulse.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_parse_warning_counter: Any | None = None
_state_change_counter: Any | None = None
_delivery_failure_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_parse_warning_counter: Any | None = None
_prom_state_change_counter: Any | None = None
_prom_delivery_failure_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _ingestion_counter, _ingestion_latency_hist, _parse_warning_counter
    global _state_change_counter, _delivery_failure_counter
    global _prom_enabled
    global _prom_ingestion_counter, _prom_ingestion_latency_hist, _prom_parse_warning_counter
    global _prom_state_change_counter, _prom_delivery_failure_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CCPULSE_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "ccpulse"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "ccpulse",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("ccpulse.monitor")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("ccpulse.monitor")

    _ingestion_counter = meter.create_counter(
        "ccpulse_ingestion_passes_total",
        unit="1",
        description="Count of conversation ingestion passes",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "ccpulse_ingestion_latency_ms",
        unit="ms",
        description="Latency of read + parse + store ingestion passes",
    )
    _parse_warning_counter = meter.create_counter(
        "ccpulse_parse_warnings_total",
        unit="1",
        description="Count of malformed conversation lines skipped",
    )
    _state_change_counter = meter.create_counter(
        "ccpulse_state_changes_total",
        unit="1",
        description="Conversation state transitions emitted",
    )
    _delivery_failure_counter = meter.create_counter(
        "ccpulse_delivery_failures_total",
        unit="1",
        description="Live connection writes that failed",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_ingestion_counter = Counter(
                "ccpulse_ingestion_passes_total",
                "Count of conversation ingestion passes",
                ["trigger", "result"],
            )
            _prom_ingestion_latency_hist = Histogram(
                "ccpulse_ingestion_latency_ms",
                "Latency of read + parse + store ingestion passes",
                ["trigger", "result"],
            )
            _prom_parse_warning_counter = Counter(
                "ccpulse_parse_warnings_total",
                "Count of malformed conversation lines skipped",
            )
            _prom_state_change_counter = Counter(
                "ccpulse_state_changes_total",
                "Conversation state transitions emitted",
                ["previous", "new"],
            )
            _prom_delivery_failure_counter = Counter(
                "ccpulse_delivery_failures_total",
                "Live connection writes that failed",
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        pass
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        pass
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        pass
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_ingestion(trigger: str, result: str, duration_ms: float) -> None:
    labels = {"trigger": _label(trigger), "result": _label(result)}
    if _enabled and _ingestion_counter is not None:
        _ingestion_counter.add(1, labels)
    if _enabled and _ingestion_latency_hist is not None:
        _ingestion_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_ingestion_counter is not None:
        _prom_ingestion_counter.labels(**labels).inc()
    if _prom_enabled and _prom_ingestion_latency_hist is not None:
        _prom_ingestion_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_parse_warnings(count: int) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _parse_warning_counter is not None:
        _parse_warning_counter.add(safe_count)
    if _prom_enabled and _prom_parse_warning_counter is not None:
        _prom_parse_warning_counter.inc(safe_count)


def record_state_change(previous: str | None, new: str) -> None:
    labels = {"previous": _label(previous), "new": _label(new)}
    if _enabled and _state_change_counter is not None:
        _state_change_counter.add(1, labels)
    if _prom_enabled and _prom_state_change_counter is not None:
        _prom_state_change_counter.labels(**labels).inc()


def record_delivery_failure() -> None:
    if _enabled and _delivery_failure_counter is not None:
        _delivery_failure_counter.add(1)
    if _prom_enabled and _prom_delivery_failure_counter is not None:
        _prom_delivery_failure_counter.inc()
