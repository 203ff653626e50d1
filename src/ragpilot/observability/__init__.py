"""
Observability for the RAG pipeline: structured logs with trace IDs, stage
probes, OpenTelemetry metrics and tracing.

Usage:
    >>> from ragpilot.observability.logging import get_logger, set_trace_id
    >>> from ragpilot.observability.probe import probe
    >>>
    >>> logger = get_logger(__name__)
    >>> set_trace_id("abc123def456")
    >>> with probe("rag.retrieve", "abc123def456", limit=10):
    ...     logger.info("Retrieving", query_length=42)

Environment:
    - RAGPILOT_OBSERVABILITY__LOG_LEVEL=INFO
    - RAGPILOT_OBSERVABILITY__ENABLE_METRICS=true
    - RAGPILOT_OBSERVABILITY__ENABLE_TRACING=true
    - RAGPILOT_OBSERVABILITY__CONSOLE_SPANS=false
"""

from .logging import get_logger, setup_logging
from .metrics import counter, get_metrics_collector, histogram, setup_meter_provider, timer
from .probe import probe
from .tracing import setup_tracing, trace_span

__all__ = [
    "get_logger",
    "setup_logging",
    "counter",
    "histogram",
    "timer",
    "get_metrics_collector",
    "setup_meter_provider",
    "probe",
    "setup_tracing",
    "trace_span",
]
