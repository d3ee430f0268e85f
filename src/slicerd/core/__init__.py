"""Core infrastructure shared by the daemon and the slicing pipeline."""

from slicerd.core.logging import JobContext, configure_logging, get_logger, with_context

__all__ = [
    "JobContext",
    "configure_logging",
    "get_logger",
    "with_context",
]
