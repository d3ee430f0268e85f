"""Job state machine: the single writer of job-visible progress.

Every transition overwrites the job's status document with the state
code, a label/detail pair from ``STATE_TEXT`` and the latest stage
timings. Write failures are logged and swallowed, except a zero-match
update, which means the job record was deleted and raises JobCanceled.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from slicerd.backends.base import DocumentStore
from slicerd.core.constants import GCODE_WAITING_SENTINEL
from slicerd.core.logging import get_logger
from slicerd.daemon.exceptions import JobCanceled, UnknownStateError
from slicerd.slicing.models import SlicingRequest

_logger = get_logger("slicing.state")


class JobState(IntEnum):
    """Persisted job states.

    WAITING through DONE are forward-only; FAILED and ERRORED are
    terminal side states reachable from any forward state.
    """

    WAITING = 0
    PREPARING = 1
    RUNNING = 2
    POSTPROCESSING = 3
    DONE = 4
    FAILED = -1
    ERRORED = -2


STATE_TEXT: dict[JobState, tuple[str, str]] = {
    JobState.WAITING: (
        "Waiting to slice",
        "Waiting in the slicing queue for the model to be sliced",
    ),
    JobState.PREPARING: (
        "Preparing slicer",
        "Preparing to slice the model; downloading the STL file and slicing options",
    ),
    JobState.RUNNING: (
        "Slicing",
        "Slicing the model",
    ),
    JobState.POSTPROCESSING: (
        "Saving sliced model",
        "Slicing completed; uploading the printing instructions for retrieval by the printer",
    ),
    JobState.DONE: (
        "Slicing completed",
        "Slicing process finished; model is ready to print",
    ),
    JobState.FAILED: (
        "Cannot slice",
        "The model cannot be sliced; something is incorrect with the STL file",
    ),
    JobState.ERRORED: (
        "Error",
        "Error; {error}",
    ),
}

_missing = set(JobState) - set(STATE_TEXT)
if _missing:
    raise RuntimeError(f"JobState members without status text: {sorted(_missing)}")

UNKNOWN_STATE_TEXT = ("Unknown", "Unknown state")


def describe_state(
    state: JobState | int,
    error: BaseException | str | None = None,
) -> tuple[JobState, str, str]:
    """Map a state onto the ``(code, label, detail)`` to persist.

    Raises:
        UnknownStateError: If ``state`` is not a JobState value.
    """
    try:
        member = JobState(state)
    except ValueError as exc:
        raise UnknownStateError(f"unknown job state {state!r}") from exc
    label, detail = STATE_TEXT[member]
    if member is JobState.ERRORED:
        detail = detail.format(error=error if error is not None else "unknown error")
    return member, label, detail


class JobStateMachine:
    """Writes job status documents through a DocumentStore."""

    def __init__(self, documents: DocumentStore) -> None:
        self._documents = documents

    def build_document(
        self,
        request: SlicingRequest,
        state: JobState | int,
        error: BaseException | str | None = None,
    ) -> tuple[dict[str, Any], str]:
        """Return the ``slicing`` sub-document and the ``gcode_file`` value."""
        try:
            code, label, detail = describe_state(state, error)
        except UnknownStateError:
            _logger.warning("state.unknown", state=state)
            code = JobState.ERRORED
            label, detail = UNKNOWN_STATE_TEXT

        slicing = {
            "status": int(code),
            "jobID": request.job_id,
            "progress": label,
            "progressDetail": detail,
            "downloadTime": request.download_time.as_triple(),
            "uploadTime": request.upload_time.as_triple(),
            "slicingTime": request.slicing_time.as_triple(),
        }
        gcode_file = GCODE_WAITING_SENTINEL
        if code is JobState.DONE and request.gcode is not None:
            gcode_file = request.gcode.url
        return slicing, gcode_file

    async def set_state(
        self,
        request: SlicingRequest,
        state: JobState | int,
        error: BaseException | str | None = None,
    ) -> None:
        """Overwrite the job's status document.

        Raises:
            JobCanceled: If the job record no longer exists.
        """
        slicing, gcode_file = self.build_document(request, state, error)
        _logger.debug("state.changing", progress=slicing["progress"], status=slicing["status"])
        try:
            matched = await self._documents.update_job_status(
                request.job_record_id, slicing, gcode_file,
            )
        except Exception as exc:
            _logger.warning(
                "state.write_failed",
                job_record_id=request.job_record_id,
                status=slicing["status"],
                error=str(exc),
            )
            return

        if matched == 0:
            _logger.info(
                "state.record_missing",
                job_record_id=request.job_record_id,
            )
            raise JobCanceled(request.job_record_id)
        _logger.debug("state.changed", status=slicing["status"])


__all__ = [
    "STATE_TEXT",
    "UNKNOWN_STATE_TEXT",
    "JobState",
    "JobStateMachine",
    "describe_state",
]
