from __future__ import annotations

import atexit
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)
_METRIC_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]+")
SERVICE_NAME = "accumbot"


def _sanitize_metric_name(name: str) -> str:
    return _METRIC_NAME_RE.sub("_", name).strip("_") or "invalid_metric"


class Instrumentation:
    """No-op metrics/tracing surface; the OpenTelemetry variant overrides it."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    def shutdown(self) -> None:
        return None


class OTelInstrumentation(Instrumentation):
    def __init__(
        self,
        *,
        metrics_exporter: str,
        otlp_endpoint: str | None,
        prometheus_port: int,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": SERVICE_NAME})
        endpoint_kwargs = {"endpoint": otlp_endpoint} if otlp_endpoint else {}

        self._trace_provider = TracerProvider(resource=resource)
        self._trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(**endpoint_kwargs))
        )
        trace.set_tracer_provider(self._trace_provider)
        self._tracer = trace.get_tracer(SERVICE_NAME)

        metric_readers = []
        if metrics_exporter == "otlp":
            metric_readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(**endpoint_kwargs)))
        elif metrics_exporter == "prometheus":
            from opentelemetry.exporter.prometheus import PrometheusMetricReader
            from prometheus_client import start_http_server

            metric_readers.append(PrometheusMetricReader())
            start_http_server(prometheus_port)

        self._metric_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        metrics.set_meter_provider(self._metric_provider)
        self._meter = metrics.get_meter(SERVICE_NAME)
        self._counters: dict[str, Any] = {}
        self._histograms: dict[str, Any] = {}

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        safe_name = _sanitize_metric_name(name)
        if safe_name not in self._counters:
            self._counters[safe_name] = self._meter.create_counter(safe_name)
        self._counters[safe_name].add(value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        safe_name = _sanitize_metric_name(name)
        if safe_name not in self._histograms:
            self._histograms[safe_name] = self._meter.create_histogram(safe_name)
        self._histograms[safe_name].record(value, attrs or {})

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name) as span:
            for key, value in (attrs or {}).items():
                span.set_attribute(key, value)
            yield

    def shutdown(self) -> None:
        self._metric_provider.force_flush()
        self._trace_provider.force_flush()
        self._metric_provider.shutdown()
        self._trace_provider.shutdown()


_LOCK = threading.Lock()
_INSTRUMENTATION: Instrumentation = Instrumentation()


def configure_instrumentation(
    *,
    enabled: bool,
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
    prometheus_port: int = 9464,
) -> Instrumentation:
    global _INSTRUMENTATION
    with _LOCK:
        if not enabled or isinstance(_INSTRUMENTATION, OTelInstrumentation):
            return _INSTRUMENTATION
        try:
            _INSTRUMENTATION = OTelInstrumentation(
                metrics_exporter=metrics_exporter,
                otlp_endpoint=otlp_endpoint,
                prometheus_port=prometheus_port,
            )
        except Exception:  # noqa: BLE001
            logger.exception("observability_setup_failed_falling_back_to_noop")
            _INSTRUMENTATION = Instrumentation()
        return _INSTRUMENTATION


def get_instrumentation() -> Instrumentation:
    return _INSTRUMENTATION


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()


atexit.register(shutdown_instrumentation)
