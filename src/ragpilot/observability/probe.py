"""
Performance probes for pipeline stages.

Every probe emits a structured timing line, updates the Prometheus request
counter and latency histogram, and opens an OpenTelemetry span named after the
operation. Per-trace timings are kept in memory so the API can report a
stage breakdown for a request.
"""

import contextlib
import time
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Histogram

from .logging import get_logger

log = get_logger("ragpilot.probe")

tracer = trace.get_tracer("ragpilot")

REQS = Counter("ragpilot_stage_total", "Pipeline stage executions", ["op", "ok"])
LAT = Histogram("ragpilot_stage_latency_seconds", "Pipeline stage latency", ["op"])

_METRICS_STORE: dict[str, dict[str, Any]] = {}


@contextlib.contextmanager
def probe(op: str, trace_id: str | None = None, **labels):
    """
    Time a pipeline stage.

    Args:
        op: Operation name (e.g., "rag.retrieve")
        trace_id: Optional trace ID for correlation
        **labels: Extra fields appended to the log line
    """
    start_time = time.perf_counter()
    ok = "true"
    error_type = None

    with tracer.start_as_current_span(op):
        try:
            yield
        except BaseException as e:
            ok = "false"
            error_type = type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

            log.info(
                f"probe {op} ok={ok}" + (f" error={error_type}" if error_type else ""),
                op=op,
                ms=duration_ms,
                **labels,
            )

            REQS.labels(op=op, ok=ok).inc()
            LAT.labels(op=op).observe(duration_ms / 1000.0)

            if trace_id:
                _METRICS_STORE.setdefault(trace_id, {})[op] = {
                    "duration_ms": duration_ms,
                    "success": ok == "true",
                    "error_type": error_type,
                    "labels": labels,
                    "timestamp": time.time(),
                }


def get_trace_metrics(trace_id: str) -> dict[str, Any]:
    """Get all stage timings recorded for a trace ID."""
    return _METRICS_STORE.get(trace_id, {})


def clear_trace_metrics(trace_id: str) -> None:
    _METRICS_STORE.pop(trace_id, None)
