"""OpenTelemetry + Prometheus fallback wiring for the ingestion pipeline."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from agentlog import config

logger = logging.getLogger("agentlog.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_commits_counter: Any | None = None
_commit_links_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_commits_counter: Any | None = None
_prom_commit_links_counter: Any | None = None


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


def _prom_labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _ingestion_counter, _ingestion_latency_hist, _parser_failure_counter
    global _commits_counter, _commit_links_counter
    global _prom_enabled
    global _prom_ingestion_counter, _prom_ingestion_latency_hist, _prom_parser_failure_counter
    global _prom_commits_counter, _prom_commit_links_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTLOG_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "agentlog-ingest"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "agentlog",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("agentlog.ingest")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agentlog.ingest")

    _ingestion_counter = meter.create_counter(
        "agentlog_ingestion_events_total",
        unit="1",
        description="Count of ingestion operations by entity and result",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "agentlog_ingestion_latency_ms",
        unit="ms",
        description="Latency for parser and importer runs",
    )
    _parser_failure_counter = meter.create_counter(
        "agentlog_parser_failures_total",
        unit="1",
        description="Records or snapshots skipped as malformed",
    )
    _commits_counter = meter.create_counter(
        "agentlog_commits_imported_total",
        unit="1",
        description="Commits stored by the commit importer",
    )
    _commit_links_counter = meter.create_counter(
        "agentlog_commit_links_total",
        unit="1",
        description="Session to commit links by match type",
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
                "agentlog_ingestion_events_total",
                "Count of ingestion operations by entity and result",
                ["entity", "result"],
            )
            _prom_ingestion_latency_hist = Histogram(
                "agentlog_ingestion_latency_ms",
                "Latency for parser and importer runs",
                ["entity", "result"],
            )
            _prom_parser_failure_counter = Counter(
                "agentlog_parser_failures_total",
                "Records or snapshots skipped as malformed",
                ["parser"],
            )
            _prom_commits_counter = Counter(
                "agentlog_commits_imported_total",
                "Commits stored by the commit importer",
                ["project"],
            )
            _prom_commit_links_counter = Counter(
                "agentlog_commit_links_total",
                "Session to commit links by match type",
                ["project", "match_type"],
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
        logger.debug("FastAPI instrumentation removal failed", exc_info=True)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception:
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
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


def record_ingestion(entity: str, result: str, duration_ms: float) -> None:
    labels = {
        "entity": entity or "unknown",
        "result": result or "unknown",
    }
    if _enabled and _ingestion_counter is not None:
        _ingestion_counter.add(1, labels)
    if _enabled and _ingestion_latency_hist is not None:
        _ingestion_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_ingestion_counter is not None:
        _prom_ingestion_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_ingestion_latency_hist is not None:
        _prom_ingestion_latency_hist.labels(**_prom_labels(**labels)).observe(max(0.0, float(duration_ms)))


def record_parser_failure(parser: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"parser": parser or "unknown"}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(safe_count, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**_prom_labels(**labels)).inc(safe_count)


def record_commit_import(project: str, *, imported: int, direct: int = 0, inferred: int = 0) -> None:
    project_label = project or "unknown"
    if _enabled and _commits_counter is not None and imported > 0:
        _commits_counter.add(int(imported), {"project": project_label})
    if _prom_enabled and _prom_commits_counter is not None and imported > 0:
        _prom_commits_counter.labels(**_prom_labels(project=project)).inc(int(imported))
    for match_type, count in (("direct", direct), ("inferred", inferred)):
        if count <= 0:
            continue
        if _enabled and _commit_links_counter is not None:
            _commit_links_counter.add(int(count), {"project": project_label, "match_type": match_type})
        if _prom_enabled and _prom_commit_links_counter is not None:
            _prom_commit_links_counter.labels(**_prom_labels(project=project, match_type=match_type)).inc(int(count))
