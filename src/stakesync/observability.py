from __future__ import annotations

import atexit
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

# Units and help text for the instruments the sync engine emits. Names not listed
# here are still accepted and created without a description.
METRICS: dict[str, tuple[str, str]] = {
    "ledger_requests_total": ("1", "Ledger query requests by network, kind and outcome"),
    "ledger_request_seconds": ("s", "Ledger query latency"),
    "ledger_records_rejected_total": ("1", "Ledger records quarantined at ingestion"),
    "sync_runs_total": ("1", "Sync runs by network, mode and final status"),
    "sync_run_seconds": ("s", "Wall time of one sync run"),
    "sync_retry_total": ("1", "Page fetch retries scheduled by the orchestrator"),
    "sync_truncated_total": ("1", "Runs whose closed stream was cut at the source skip limit"),
    "page_cache_hit_total": ("1", "Fallback page cache hits"),
    "page_cache_miss_total": ("1", "Fallback page cache misses or expired entries"),
    "read_fallback_total": ("1", "Reads served by a fallback source instead of the store"),
}

METRIC_EXPORTERS = ("none", "otlp", "prometheus")


class Instrumentation:
    """Metrics and tracing sink. The base class drops everything."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    def flush(self) -> None:
        return None

    def shutdown(self) -> None:
        return None


class NoopInstrumentation(Instrumentation):
    pass


def _metric_readers(exporter: str, otlp_endpoint: str | None, prometheus_port: int) -> list[Any]:
    if exporter == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

        metric_exporter = OTLPMetricExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPMetricExporter()
        return [PeriodicExportingMetricReader(metric_exporter)]
    if exporter == "prometheus":
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        from prometheus_client import start_http_server

        start_http_server(prometheus_port)
        return [PrometheusMetricReader()]
    return []


class OTelInstrumentation(Instrumentation):
    def __init__(
        self,
        *,
        service_name: str,
        metrics_exporter: str,
        otlp_endpoint: str | None,
        prometheus_port: int,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        if metrics_exporter not in METRIC_EXPORTERS:
            raise ValueError(f"unsupported metrics exporter {metrics_exporter!r}")
        resource = Resource.create({"service.name": service_name})

        self._tracer_provider = TracerProvider(resource=resource)
        self._tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter())
        )
        trace.set_tracer_provider(self._tracer_provider)
        self._tracer = trace.get_tracer(service_name)

        self._meter_provider = MeterProvider(
            resource=resource,
            metric_readers=_metric_readers(metrics_exporter, otlp_endpoint, prometheus_port),
        )
        metrics.set_meter_provider(self._meter_provider)
        self._meter = metrics.get_meter(service_name)
        self._counters: dict[str, Any] = {}
        self._histograms: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _get(self, registry: dict[str, Any], name: str, factory: Any) -> Any:
        with self._lock:
            instrument = registry.get(name)
            if instrument is None:
                unit, description = METRICS.get(name, ("1", ""))
                instrument = factory(name, unit=unit, description=description)
                registry[name] = instrument
            return instrument

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._get(self._counters, name, self._meter.create_counter).add(value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._get(self._histograms, name, self._meter.create_histogram).record(value, attrs or {})

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name, attributes=attrs or {}):
            yield

    def flush(self) -> None:
        self._meter_provider.force_flush()
        self._tracer_provider.force_flush()

    def shutdown(self) -> None:
        self.flush()
        self._meter_provider.shutdown()
        self._tracer_provider.shutdown()


_LOCK = threading.Lock()
_INSTRUMENTATION: Instrumentation = NoopInstrumentation()
_CONFIGURED = False


def configure_instrumentation(
    *,
    enabled: bool,
    service_name: str = "stakesync",
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
    prometheus_port: int = 9464,
) -> Instrumentation:
    """Install the process-wide sink once; later calls return the installed one.

    OpenTelemetry and prometheus_client come from the ``otel`` extra and are only
    imported when ``enabled`` is true. Any setup failure leaves the no-op sink.
    """

    global _INSTRUMENTATION, _CONFIGURED
    with _LOCK:
        if _CONFIGURED:
            return _INSTRUMENTATION
        _CONFIGURED = True
        if not enabled:
            return _INSTRUMENTATION
        try:
            _INSTRUMENTATION = OTelInstrumentation(
                service_name=service_name,
                metrics_exporter=metrics_exporter,
                otlp_endpoint=otlp_endpoint,
                prometheus_port=prometheus_port,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "observability_setup_failed_falling_back_to_noop",
                extra={"extra": {"metrics_exporter": metrics_exporter}},
            )
            _INSTRUMENTATION = NoopInstrumentation()
        return _INSTRUMENTATION


def get_instrumentation() -> Instrumentation:
    return _INSTRUMENTATION


def flush_instrumentation() -> None:
    _INSTRUMENTATION.flush()


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()


atexit.register(shutdown_instrumentation)
