"""Structured logging infrastructure for slicerd.

Provides structured logging using structlog with worker-specific context
such as job_id and job_record_id. Supports console and JSON output, with
an optional rotating log file.

Example usage:
    from slicerd.core.logging import JobContext, configure_logging, get_logger, with_context

    # Configure once at startup
    configure_logging(level="DEBUG", format="console")

    # Get a component-specific logger
    logger = get_logger("pipeline")

    # Log with auto-context
    ctx = JobContext(job_id="P3D-1234-77", job_record_id="5a1f...")
    with with_context(ctx):
        logger.info("pipeline.sliced", elapsed_ms=812)  # includes job_id
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Sensitive field patterns that should never be logged
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "token",
    "secret",
    "password",
    "credential",
    "access_key",
    "authorization",
})


@dataclass(frozen=True)
class JobContext:
    """Immutable context for correlating log entries of one slicing job.

    Attributes:
        job_id: Producer-supplied job identifier, used for logging only.
        job_record_id: Identifier of the persisted job status document.
        priority: Queue the message was claimed from, when known.
    """

    job_id: str
    job_record_id: str | None = None
    priority: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert context to a dictionary for logging (None values dropped)."""
        result: dict[str, Any] = {"job_id": self.job_id}
        if self.job_record_id is not None:
            result["job_record_id"] = self.job_record_id
        if self.priority is not None:
            result["priority"] = self.priority
        return result


# Using ContextVar ensures proper isolation between concurrent job tasks
_current_context: ContextVar[JobContext | None] = ContextVar(
    "slicerd_context", default=None
)


def get_current_context() -> JobContext | None:
    """Get the current JobContext if set."""
    return _current_context.get()


@contextmanager
def with_context(ctx: JobContext) -> Iterator[JobContext]:
    """Set the JobContext for the duration of a block.

    All log calls within the block automatically include the context fields
    when the ``_add_context`` processor is active.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    """Return "[REDACTED]" for values whose key looks sensitive."""
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields (one level deep)."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {
                k: _sanitize_value(k, v) for k, v in value.items()
            }
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds an ISO8601 UTC timestamp."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds JobContext fields to log entries.

    Explicitly bound fields take precedence over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            if key not in event_dict:
                event_dict[key] = value
    return event_dict


class SlicerLogger:
    """Component logger wrapper around structlog.

    Fetches a fresh structlog logger on every call so loggers created at
    import time still respect a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an exception with traceback; call from an exception handler."""
        self._get_logger().exception(event, **kw)


def _get_processors(renderer: Processor, include_context: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        processors.append(_add_context)
    processors.extend([
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_context: bool = True,
) -> None:
    """Configure slicerd structured logging.

    Call once at startup before any logging occurs.

    Args:
        level: Minimum log level to capture.
        format: "json" for structured output, "console" for human-readable.
        file_path: Optional log file; rotated at ``max_file_size_mb``.
        max_file_size_mb: Maximum log file size before rotation (MB).
        backup_count: Number of rotated log files to keep.
        include_context: Whether to include JobContext fields in log entries.
    """
    log_level = getattr(logging, level)

    handlers: list[logging.Handler] = []
    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        ))
    else:
        stream = sys.stdout if format == "json" else sys.stderr
        handlers.append(logging.StreamHandler(stream))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=file_path is None)

    # cache_logger_on_first_use=False so module-level loggers pick up
    # configuration applied after import
    structlog.configure(
        processors=_get_processors(renderer, include_context),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> SlicerLogger:
    """Get a logger bound to a component name."""
    return SlicerLogger(component, **initial_context)


__all__ = [
    "JobContext",
    "SENSITIVE_PATTERNS",
    "SlicerLogger",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
