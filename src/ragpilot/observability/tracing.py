"""
OpenTelemetry tracing integration.

TracingManager installs an SDK tracer provider (optionally exporting to the
console) and trace_span wraps coroutines or functions in a span that records
exceptions and marks the span status.
"""

import asyncio
import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import Status, StatusCode

from .logging import get_logger, get_trace_id, reset_trace_id, set_trace_id

logger = get_logger(__name__)


class TracingManager:
    """Manages OpenTelemetry tracing configuration."""

    def __init__(self, service_name: str = "ragpilot", service_version: str = "0.3.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.tracer: trace.Tracer = trace.get_tracer(service_name, service_version)
        self._initialized = False

    def initialize(self, console_export: bool = False) -> None:
        """Install an SDK tracer provider."""
        if self._initialized:
            return

        resource = Resource.create(
            {"service.name": self.service_name, "service.version": self.service_version}
        )
        self.tracer_provider = TracerProvider(resource=resource)
        if console_export:
            self.tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(self.tracer_provider)

        self.tracer = trace.get_tracer(self.service_name, self.service_version)
        self._initialized = True
        logger.info("Tracing initialized", console_export=console_export)

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None):
        """Context manager for creating spans."""
        with self.tracer.start_as_current_span(
            name, record_exception=False, set_status_on_exception=False
        ) as span:
            for key, value in (attributes or {}).items():
                span.set_attribute(key, str(value))

            token = None
            span_context = span.get_span_context()
            if span_context.is_valid and get_trace_id() is None:
                token = set_trace_id(format(span_context.trace_id, "032x"))

            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            finally:
                if token is not None:
                    reset_trace_id(token)

    def shutdown(self) -> None:
        if self.tracer_provider:
            self.tracer_provider.shutdown()
        self._initialized = False


_tracing_manager: TracingManager | None = None


def setup_tracing(
    service_name: str = "ragpilot", console_export: bool = False
) -> TracingManager:
    """Setup the global tracing manager."""
    global _tracing_manager
    _tracing_manager = TracingManager(service_name=service_name)
    _tracing_manager.initialize(console_export=console_export)
    return _tracing_manager


def get_tracing_manager() -> TracingManager:
    """Get the global tracing manager (uninitialized API tracer if not set up)."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
    return _tracing_manager


def trace_span(name: str | None = None, attributes: dict[str, Any] | None = None):
    """Decorator for automatic span creation."""

    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, attributes) as span:
                result = await func(*args, **kwargs)
                span.set_status(Status(StatusCode.OK))
                return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, attributes) as span:
                result = func(*args, **kwargs)
                span.set_status(Status(StatusCode.OK))
                return result

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


def add_span_attributes(**attributes):
    """Add attributes to the current span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        for key, value in attributes.items():
            current_span.set_attribute(key, str(value))
