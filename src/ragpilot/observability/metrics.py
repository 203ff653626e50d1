"""
Pipeline metrics on top of the OpenTelemetry metrics API.

The collector records query counts, retrieval sizes, backend call outcomes
and reflection round distributions. Without an explicit meter it falls back
to a no-op meter, so instrumented code never needs to check whether metrics
are enabled.
"""

import time
from collections import defaultdict
from collections.abc import Sequence
from contextlib import contextmanager
from typing import Any

from opentelemetry.metrics import Counter, Histogram, Meter, NoOpMeter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._backend_calls: dict[str, int] = defaultdict(int)
        self._backend_failures: dict[str, int] = defaultdict(int)
        self._reflection_answers = 0
        self._reflection_rounds_total = 0

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["rag_queries_total"] = self.meter.create_counter(
            "ragpilot_rag_queries_total", description="Total RAG pipeline runs", unit="1"
        )
        self._histograms["rag_duration"] = self.meter.create_histogram(
            "ragpilot_rag_duration_seconds", description="End-to-end pipeline duration", unit="s"
        )
        self._histograms["rag_sources"] = self.meter.create_histogram(
            "ragpilot_rag_sources", description="Sources returned per query", unit="1"
        )
        self._counters["backend_calls_total"] = self.meter.create_counter(
            "ragpilot_backend_calls_total", description="Model backend calls", unit="1"
        )
        self._histograms["backend_duration"] = self.meter.create_histogram(
            "ragpilot_backend_duration_seconds", description="Model backend call duration", unit="s"
        )
        self._histograms["reflection_rounds"] = self.meter.create_histogram(
            "ragpilot_reflection_rounds", description="Reflection rounds per answer", unit="1"
        )

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"ragpilot_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"ragpilot_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_rag_query(self, duration: float, sources_count: int, streaming: bool):
        attributes = {"streaming": str(streaming).lower()}
        self._counters["rag_queries_total"].add(1, attributes)
        self._histograms["rag_duration"].record(duration, attributes)
        self._histograms["rag_sources"].record(sources_count, attributes)

    def record_backend_call(self, operation: str, duration: float, success: bool):
        attributes = {"operation": operation, "success": str(success).lower()}
        self._counters["backend_calls_total"].add(1, attributes)
        self._histograms["backend_duration"].record(duration, attributes)

        self._backend_calls[operation] += 1
        if not success:
            self._backend_failures[operation] += 1

    def record_reflection(self, rounds: int):
        self._histograms["reflection_rounds"].record(rounds)
        self._reflection_answers += 1
        self._reflection_rounds_total += rounds

    def get_summary(self) -> dict[str, Any]:
        """Aggregate in-process counters for the health endpoint."""
        backend = {
            op: {
                "calls": calls,
                "failures": self._backend_failures[op],
                "failure_rate": self._backend_failures[op] / calls if calls else 0.0,
            }
            for op, calls in self._backend_calls.items()
        }
        answers = self._reflection_answers
        return {
            "backend": backend,
            "reflection": {
                "answers": answers,
                "avg_rounds": self._reflection_rounds_total / answers if answers else 0.0,
            },
        }


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def setup_meter_provider(
    service_name: str = "ragpilot",
    console_export: bool = False,
    readers: Sequence[MetricReader] = (),
) -> MeterProvider:
    """
    Back the global collector with an SDK meter provider.

    Instruments record into the provider's readers; with console_export the
    aggregated metrics are also printed periodically. Call `shutdown()` on
    the returned provider to flush them.
    """
    metric_readers = list(readers)
    if console_export:
        metric_readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))

    provider = MeterProvider(
        resource=Resource.create({"service.name": service_name}),
        metric_readers=metric_readers,
    )
    setup_metrics(provider.get_meter(service_name))
    logger.info("Metrics initialized", readers=len(metric_readers))
    return provider


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector, creating a no-op one if needed."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("ragpilot"))
    return _metrics_collector


def counter(name: str, description: str = "", unit: str = "1") -> Counter:
    return get_metrics_collector().counter(name, description, unit)


def histogram(name: str, description: str = "", unit: str = "1") -> Histogram:
    return get_metrics_collector().histogram(name, description, unit)


@contextmanager
def timer(metric_name: str, attributes: dict[str, str] | None = None):
    """Context manager for timing operations."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        hist = histogram(f"{metric_name}_duration", "Operation duration", "s")
        hist.record(duration, attributes or {})
