"""Worker daemon: configuration, queue management, HTTP surface and bootstrap."""

from slicerd.daemon.config import WorkerConfig, load_config
from slicerd.daemon.exceptions import (
    ConfigurationError,
    JobCanceled,
    RequestValidationError,
    SlicerFailure,
    TransientError,
    UnknownStateError,
    WorkerError,
)

__all__ = [
    "ConfigurationError",
    "JobCanceled",
    "RequestValidationError",
    "SlicerFailure",
    "TransientError",
    "UnknownStateError",
    "WorkerConfig",
    "WorkerError",
    "load_config",
]
