"""
Structured logging for the RAG pipeline with trace ID support.
"""

import logging
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime

# Context variable for trace ID propagation
trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)

_loggers: dict[str, "StructuredLogger"] = {}

# LogRecord attributes that must not be overwritten through `extra`
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    }
)

# Fields rendered in the fixed prefix rather than as trailing key=value pairs
_PREFIX_FIELDS = frozenset({"trace_id", "op", "ms", "duration_ms"})


class StructuredFormatter(logging.Formatter):
    """Single-line key=value formatter with trace ID support."""

    def format(self, record: logging.LogRecord) -> str:
        trace_id = trace_id_ctx.get() or getattr(record, "trace_id", None) or "-"

        parts = record.name.split(".")
        mod = parts[-1] if parts else record.name
        op = getattr(record, "op", getattr(record, "funcName", "-"))

        duration = getattr(record, "ms", getattr(record, "duration_ms", None))
        ms_part = f" ms={duration:.1f}" if duration is not None else ""

        timestamp = datetime.now(UTC).isoformat()
        msg = record.getMessage()

        extra_fields = "".join(
            f" {key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in _PREFIX_FIELDS
        )

        line = (
            f"t={timestamp} level={record.levelname} trace={trace_id} mod={mod} op={op}"
            f'{ms_part} msg="{msg}"{extra_fields}'
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """Structured logger accepting keyword fields."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs):
        extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_ATTRS}
        extra["trace_id"] = trace_id_ctx.get()
        self.logger.log(level, msg, extra=extra, exc_info=exc_info, stacklevel=3)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)

    def timed(self, msg: str, duration_ms: float, **kwargs):
        """Log with timing information."""
        kwargs["ms"] = duration_ms
        self.info(msg, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def setup_logging(level: str = "INFO") -> None:
    """Install the structured formatter on the root logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    # Quiet chatty third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def set_trace_id(trace_id: str) -> Token:
    """Set trace ID in current context; pass the token to `reset_trace_id` to undo."""
    return trace_id_ctx.set(trace_id)


def reset_trace_id(token: Token) -> None:
    """Restore the trace ID that was current before the matching `set_trace_id`."""
    trace_id_ctx.reset(token)


def get_trace_id() -> str | None:
    """Get current trace ID from context."""
    return trace_id_ctx.get()


def clear_trace_id() -> None:
    trace_id_ctx.set(None)
