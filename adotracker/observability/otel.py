"""OpenTelemetry + Prometheus fallback wiring for the ADO Tracker backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from adotracker import config

logger = logging.getLogger("adotracker.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_run_counter: Any | None = None
_run_duration_hist: Any | None = None
_items_counter: Any | None = None
_item_failure_counter: Any | None = None

_prom_enabled = False
_prom_run_counter: Any | None = None
_prom_run_duration_hist: Any | None = None
_prom_items_counter: Any | None = None
_prom_item_failure_counter: Any | None = None


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


def _label(value: str | None, default: str = "unknown") -> str:
    return (value or "").strip() or default


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _run_counter, _run_duration_hist, _items_counter, _item_failure_counter
    global _prom_enabled, _prom_run_counter, _prom_run_duration_hist, _prom_items_counter, _prom_item_failure_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (ADOTRACKER_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "ado-tracker"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "adotracker",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("adotracker.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("adotracker.backend")

    _run_counter = meter.create_counter(
        "adotracker_runs_total",
        unit="1",
        description="Completed sync, tag and retag runs",
    )
    _run_duration_hist = meter.create_histogram(
        "adotracker_run_duration_ms",
        unit="ms",
        description="Duration of sync, tag and retag runs",
    )
    _items_counter = meter.create_counter(
        "adotracker_items_total",
        unit="1",
        description="Work items touched by runs, by outcome",
    )
    _item_failure_counter = meter.create_counter(
        "adotracker_item_failures_total",
        unit="1",
        description="Per-item failures isolated during runs",
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
            _prom_run_counter = Counter(
                "adotracker_runs_total",
                "Completed sync, tag and retag runs",
                ["kind", "status"],
            )
            _prom_run_duration_hist = Histogram(
                "adotracker_run_duration_ms",
                "Duration of sync, tag and retag runs",
                ["kind"],
            )
            _prom_items_counter = Counter(
                "adotracker_items_total",
                "Work items touched by runs, by outcome",
                ["kind", "outcome"],
            )
            _prom_item_failure_counter = Counter(
                "adotracker_item_failures_total",
                "Per-item failures isolated during runs",
                ["stage"],
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


def record_run(kind: str, status: str, duration_ms: float, *, counts: dict[str, int] | None = None) -> None:
    """Record one finished run plus its per-outcome item counts."""
    labels = {"kind": _label(kind), "status": _label(status)}
    duration = max(0.0, float(duration_ms))
    if _enabled and _run_counter is not None:
        _run_counter.add(1, labels)
    if _enabled and _run_duration_hist is not None:
        _run_duration_hist.record(duration, {"kind": labels["kind"]})
    if _prom_enabled and _prom_run_counter is not None:
        _prom_run_counter.labels(**labels).inc()
    if _prom_enabled and _prom_run_duration_hist is not None:
        _prom_run_duration_hist.labels(kind=labels["kind"]).observe(duration)

    for outcome, count in (counts or {}).items():
        safe_count = max(0, int(count))
        if safe_count == 0:
            continue
        if _enabled and _items_counter is not None:
            _items_counter.add(safe_count, {"kind": labels["kind"], "outcome": outcome})
        if _prom_enabled and _prom_items_counter is not None:
            _prom_items_counter.labels(kind=labels["kind"], outcome=outcome).inc(safe_count)


def record_item_failure(stage: str) -> None:
    if _enabled and _item_failure_counter is not None:
        _item_failure_counter.add(1, {"stage": _label(stage)})
    if _prom_enabled and _prom_item_failure_counter is not None:
        _prom_item_failure_counter.labels(stage=_label(stage)).inc()


def record_sync_run(
    status: str,
    added: int,
    updated: int,
    skipped: int,
    duration_ms: float,
    project: str | None = None,
) -> None:
    record_run(
        "sync",
        status,
        duration_ms,
        counts={"added": added, "updated": updated, "skipped": skipped},
    )
    logger.debug("Recorded sync metrics for project=%s", project or "default")


def record_tagging(mode: str, tagged: int, failed: int, duration_ms: float) -> None:
    kind = "tag" if mode == "pending" else "retag"
    record_run(
        kind,
        "success" if failed == 0 else "partial",
        duration_ms,
        counts={"tagged": tagged, "failed": failed},
    )
