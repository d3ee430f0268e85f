"""Job pipeline: drives one slicing request from claim to disposition.

Stages run strictly in order::

    validate -> PREPARING (download stl + config in parallel)
             -> RUNNING (slicer) -> POSTPROCESSING (upload gcode) -> DONE

Every outcome ends the same way: local files are removed, the queue
message is removed or requeued, the outcome is counted, and the
in-flight counter is decremented once.

Error classification:

- ``RequestValidationError``: ERRORED written, message removed, not counted
- ``JobCanceled``: no further write, message removed, canceled counter
- ``SlicerFailure``: FAILED written, message removed, failed-slicing counter
- anything else: ERRORED written, message requeued, failed counter
"""

from __future__ import annotations

import asyncio
import copy
from enum import Enum
from typing import Any

from slicerd.backends.base import ObjectStorage
from slicerd.core.constants import REQUIRED_MESSAGE_FIELDS
from slicerd.core.logging import JobContext, get_logger, with_context
from slicerd.daemon.exceptions import JobCanceled, RequestValidationError, SlicerFailure
from slicerd.daemon.queue import QueueManager
from slicerd.slicing.models import ResourceRef, SlicingRequest
from slicerd.slicing.runner import SlicerRunner
from slicerd.slicing.state import JobState, JobStateMachine
from slicerd.slicing.stats import StatsAggregator
from slicerd.slicing.workspace import Workspace

_logger = get_logger("slicing.pipeline")


class Outcome(str, Enum):
    """How a request left the pipeline."""

    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    CANCELED = "canceled"
    FAILED_SLICING = "failed_slicing"
    ERRORED = "errored"

    @property
    def retryable(self) -> bool:
        return self is Outcome.ERRORED


class JobPipeline:
    """Processes slicing requests claimed by a QueueManager."""

    def __init__(
        self,
        *,
        queue: QueueManager,
        state: JobStateMachine,
        storage: ObjectStorage,
        runner: SlicerRunner,
        workspace: Workspace,
        stats: StatsAggregator,
    ) -> None:
        self._queue = queue
        self._state = state
        self._storage = storage
        self._runner = runner
        self._workspace = workspace
        self._stats = stats

    async def process(self, raw: dict[str, Any], *, priority: str | None = None) -> Outcome:
        """Process one raw queue payload to a terminal outcome."""
        msg = copy.deepcopy(raw)
        request = SlicingRequest(
            job_id=str(msg.get("job_id") or "unknown"),
            job_record_id=str(msg["job_oid"]) if msg.get("job_oid") else "",
            handle=str(msg["handle"]) if msg.get("handle") else "",
            raw=msg,
        )
        ctx = JobContext(
            job_id=request.job_id,
            job_record_id=request.job_record_id or None,
            priority=priority,
        )
        with with_context(ctx):
            try:
                self._validate(request)
            except RequestValidationError as exc:
                await self._reject(request, exc)
                return Outcome.REJECTED
            return await self._run(request)

    # ─── Validation ───────────────────────────────────────────────────

    def _validate(self, request: SlicingRequest) -> None:
        msg = request.raw
        for name in REQUIRED_MESSAGE_FIELDS:
            if msg.get(name) in (None, ""):
                raise RequestValidationError(
                    f"Programming error; slicing request is missing the required parameter {name}"
                )
        try:
            request.stl = self._workspace.resolve(msg["stl_file"])
            request.config = self._workspace.resolve(msg["config_file"])
            request.gcode = self._workspace.resolve(msg["gcode_file"])
        except RequestValidationError as exc:
            raise RequestValidationError(
                f"Programming error; invalid data; {exc}"
            ) from exc

    async def _reject(self, request: SlicingRequest, exc: RequestValidationError) -> None:
        _logger.warning("pipeline.rejected", error=str(exc))
        if request.job_record_id:
            try:
                await self._state.set_state(request, JobState.ERRORED, exc)
            except JobCanceled:
                _logger.info("pipeline.rejected_record_missing")
        if request.handle:
            await self._queue.remove(request.handle)

    # ─── Processing ───────────────────────────────────────────────────

    async def _run(self, request: SlicingRequest) -> Outcome:
        self._queue.track(request.handle)
        self._queue.adjust_in_flight(1)
        try:
            outcome = await self._execute_and_classify(request)
            self._workspace.remove_files(request.local_paths, job_id=request.job_id)
            if outcome.retryable:
                await self._queue.requeue(request.handle)
            else:
                await self._queue.remove(request.handle)
            self._record(outcome, request)
            return outcome
        except asyncio.CancelledError:
            _logger.info("pipeline.cancelled_requeueing")
            self._workspace.remove_files(request.local_paths, job_id=request.job_id)
            await self._queue.requeue(request.handle)
            raise
        finally:
            self._queue.adjust_in_flight(-1)

    async def _execute_and_classify(self, request: SlicingRequest) -> Outcome:
        try:
            await self._execute(request)
        except JobCanceled:
            _logger.info("pipeline.canceled")
            return Outcome.CANCELED
        except SlicerFailure as exc:
            _logger.info("pipeline.model_failed_to_slice", error=str(exc), exit_code=exc.exit_code)
            await self._write_terminal(request, JobState.FAILED)
            return Outcome.FAILED_SLICING
        except Exception as exc:
            _logger.warning("pipeline.errored", error=str(exc), error_type=type(exc).__name__)
            await self._write_terminal(request, JobState.ERRORED, exc)
            return Outcome.ERRORED
        return Outcome.SUCCEEDED

    async def _execute(self, request: SlicingRequest) -> None:
        stl, config, gcode = self._resources(request)

        await self._state.set_state(request, JobState.PREPARING)
        request.download_time.start()
        await self._download_all([stl, config])
        request.download_time.finish()
        _logger.debug("pipeline.downloaded", elapsed_ms=request.download_time.elapsed_ms)

        await self._state.set_state(request, JobState.RUNNING)
        request.slicing_time.start()
        await self._runner.run(config.local_path, stl.local_path, gcode.local_path)
        request.slicing_time.finish()
        self._stats.add_slicing_time(request.slicing_time.elapsed_seconds)

        await self._state.set_state(request, JobState.POSTPROCESSING)
        request.upload_time.start()
        await self._storage.upload(gcode.local_path, gcode.bucket, gcode.key)
        request.upload_time.finish()
        _logger.debug("pipeline.uploaded", elapsed_ms=request.upload_time.elapsed_ms)

        await self._state.set_state(request, JobState.DONE)
        _logger.info("pipeline.sliced", slicing_seconds=request.slicing_time.elapsed_seconds)

    @staticmethod
    def _resources(request: SlicingRequest) -> tuple[ResourceRef, ResourceRef, ResourceRef]:
        if request.stl is None or request.config is None or request.gcode is None:
            raise RequestValidationError("request resources were not derived")
        return request.stl, request.config, request.gcode

    async def _download_all(self, resources: list[ResourceRef]) -> None:
        tasks = [
            asyncio.ensure_future(self._storage.download(r.bucket, r.key, r.local_path))
            for r in resources
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _write_terminal(
        self,
        request: SlicingRequest,
        state: JobState,
        error: BaseException | None = None,
    ) -> None:
        try:
            await self._state.set_state(request, state, error)
        except JobCanceled:
            _logger.info("pipeline.terminal_write_record_missing", state=state.name)

    def _record(self, outcome: Outcome, request: SlicingRequest) -> None:
        if outcome is Outcome.SUCCEEDED:
            self._stats.record_success(request.slicing_time.elapsed_seconds)
        elif outcome is Outcome.CANCELED:
            self._stats.record_canceled()
        elif outcome is Outcome.FAILED_SLICING:
            self._stats.record_slicer_failure()
        elif outcome is Outcome.ERRORED:
            self._stats.record_failure()


__all__ = ["JobPipeline", "Outcome"]
