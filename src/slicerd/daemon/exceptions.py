"""Exception hierarchy for the slicing worker.

All worker-specific exceptions inherit from WorkerError, enabling callers
to catch broad (WorkerError) or narrow (e.g., SlicerFailure). The pipeline
maps each class onto a queue disposition:

- ``RequestValidationError``, ``JobCanceled``, ``SlicerFailure``: remove
- ``TransientError`` and anything unexpected: requeue
"""

from __future__ import annotations


class WorkerError(Exception):
    """Base exception for all worker errors."""


class ConfigurationError(WorkerError):
    """Raised when the worker configuration cannot be used (bad template, etc.)."""


class RequestValidationError(WorkerError):
    """Raised when a slicing request is incomplete or malformed.

    A producer defect: the message is removed and never retried.
    """


class JobCanceled(WorkerError):
    """Raised when the job's status document no longer exists.

    The job was deleted externally; processing stops without retry and
    without any further status write.
    """

    def __init__(self, job_record_id: str | None) -> None:
        super().__init__(f"job record {job_record_id} no longer exists")
        self.job_record_id = job_record_id


class SlicerFailure(WorkerError):
    """Raised when the slicing engine rejects the model.

    Covers non-zero exit, spawn failure and an exceeded deadline. The input
    itself is unsliceable, so the message is removed.
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr_tail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class TransientError(WorkerError):
    """Raised for storage, network or document-store hiccups.

    Retryable: the message is requeued.
    """


class UnknownStateError(WorkerError):
    """Raised internally when a state value has no status mapping."""
