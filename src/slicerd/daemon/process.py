"""Slicing worker process.

Wires the backends, queue manager, state machine, stats and pipeline
together, serves the HTTP surface, and runs the consume loop until
SIGTERM/SIGINT.

The entry point is ``slicerd start`` via ``slicerd.cli``.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections.abc import Iterator
from typing import Any

import uvicorn

from slicerd.backends.base import DocumentStore, ObjectStorage, QueueTransport
from slicerd.backends.documents import SQLiteDocumentStore
from slicerd.backends.sqs import SQSTransport
from slicerd.backends.storage import LocalObjectStorage, S3ObjectStorage
from slicerd.core.logging import get_logger
from slicerd.daemon.config import PermsConfig, StorageConfig, WorkerConfig
from slicerd.daemon.exceptions import ConfigurationError
from slicerd.daemon.health import create_app
from slicerd.daemon.queue import QueueManager
from slicerd.daemon.task_utils import DetachedTasks, log_task_exception
from slicerd.slicing.pipeline import JobPipeline
from slicerd.slicing.runner import SlicerRunner
from slicerd.slicing.state import JobStateMachine
from slicerd.slicing.stats import StatsAggregator
from slicerd.slicing.workspace import Workspace

_logger = get_logger("worker")


def build_storage(config: StorageConfig) -> ObjectStorage:
    if config.backend == "local":
        return LocalObjectStorage(config.local_root.expanduser())
    return S3ObjectStorage(config.region, endpoint_url=config.endpoint_url)


def drop_privileges(perms: PermsConfig | None) -> None:
    """Switch to the configured uid/gid. No-op when ``perms`` is None.

    Raises:
        ConfigurationError: If the process is not allowed to switch.
    """
    if perms is None:
        _logger.info("worker.privileges_unchanged")
        return
    _logger.debug("worker.dropping_privileges", uid=perms.uid, gid=perms.gid)
    try:
        os.setgroups([perms.gid])
        os.setgid(perms.gid)
        os.setuid(perms.uid)
    except OSError as exc:
        raise ConfigurationError(
            f"failed to change uid:gid to {perms.uid}:{perms.gid}: {exc}"
        ) from exc
    _logger.info("worker.privileges_dropped", uid=perms.uid, gid=perms.gid)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class WorkerProcess:
    """Long-running slicing worker.

    Backends may be injected (tests); otherwise they are built from the
    config: SQS transport, S3 or local storage, SQLite documents.
    """

    def __init__(
        self,
        config: WorkerConfig,
        *,
        transport: QueueTransport | None = None,
        storage: ObjectStorage | None = None,
        documents: DocumentStore | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._storage = storage
        self._documents = documents
        self._shutdown = asyncio.Event()
        self._slots = asyncio.Semaphore(config.max_concurrent_jobs)
        self._jobs: set[asyncio.Task[Any]] = set()
        self._server: _EmbeddedServer | None = None
        self._server_task: asyncio.Task[None] | None = None
        self.queue: QueueManager | None = None
        self.stats: StatsAggregator | None = None

    @property
    def running_jobs(self) -> int:
        return len(self._jobs)

    def request_shutdown(self) -> None:
        """Stop claiming; running jobs are drained by ``run``."""
        if not self._shutdown.is_set():
            _logger.info("worker.shutdown_requested", running_jobs=len(self._jobs))
        self._shutdown.set()

    async def run(self) -> None:
        """Main lifecycle: boot, consume, drain, shutdown."""
        config = self._config
        workspace = Workspace(config.slicer.work_dir.expanduser())
        workspace.ensure()

        owned_store: SQLiteDocumentStore | None = None
        documents = self._documents
        if documents is None:
            owned_store = SQLiteDocumentStore(config.documents.path.expanduser())
            await owned_store.open()
            documents = owned_store

        try:
            storage = self._storage or build_storage(config.storage)
            transport = self._transport or SQSTransport(
                config.queue.region, endpoint_url=config.queue.endpoint_url,
            )
            self.queue = QueueManager(transport, config.queue)
            self.stats = StatsAggregator(
                documents, detached=DetachedTasks(_logger, "worker.stats_write_failed"),
            )
            pipeline = JobPipeline(
                queue=self.queue,
                state=JobStateMachine(documents),
                storage=storage,
                runner=SlicerRunner(config.slicer),
                workspace=workspace,
                stats=self.stats,
            )

            self._install_signal_handlers()
            if config.http.enabled:
                await self._start_http(self.stats, self.queue)
            drop_privileges(config.perms)

            self.queue.start_renewal()
            _logger.info(
                "worker.started",
                pid=os.getpid(),
                max_concurrent_jobs=config.max_concurrent_jobs,
                high_priority_queue=config.queue.high_priority_url,
                low_priority_queue=config.queue.low_priority_url,
            )
            await self._consume(pipeline, self.queue)
            await self._drain_jobs()
            await self.queue.stop_renewal()
            await self.stats.detached.drain()
        finally:
            self._remove_signal_handlers()
            await self._stop_http()
            if owned_store is not None:
                await owned_store.close()
            _logger.info("worker.stopped")

    # ─── Consume loop ─────────────────────────────────────────────────

    async def _consume(self, pipeline: JobPipeline, queue: QueueManager) -> None:
        idle_sleep = self._config.queue.idle_sleep_seconds
        while not self._shutdown.is_set():
            if not await self._acquire_slot():
                break
            try:
                message = await queue.claim_next()
            except Exception:
                self._slots.release()
                raise
            if message is None:
                self._slots.release()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._shutdown.wait(), timeout=idle_sleep)
                continue
            task = asyncio.create_task(
                pipeline.process(message.payload, priority=message.priority.value),
                name=f"job-{message.handle[:12]}",
            )
            self._jobs.add(task)
            task.add_done_callback(self._on_job_done)

    async def _acquire_slot(self) -> bool:
        """Wait for a concurrency slot; False if shutdown came first."""
        acquire = asyncio.ensure_future(self._slots.acquire())
        stop = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if not acquire.done():
            acquire.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await acquire
        if acquire.done() and not acquire.cancelled():
            if self._shutdown.is_set():
                self._slots.release()
                return False
            return True
        return False

    def _on_job_done(self, task: asyncio.Task[Any]) -> None:
        self._jobs.discard(task)
        self._slots.release()
        log_task_exception(task, _logger, "worker.job_task_failed")

    async def _drain_jobs(self) -> None:
        if not self._jobs:
            return
        timeout = self._config.shutdown_timeout_seconds
        _logger.info("worker.draining", running_jobs=len(self._jobs), timeout_seconds=timeout)
        _, pending = await asyncio.wait(set(self._jobs), timeout=timeout)
        if pending:
            _logger.warning("worker.cancelling_jobs", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # ─── Signals ──────────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                _logger.debug("worker.signal_handler_unavailable", signal=sig.name)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._shutdown.is_set():
            _logger.info("worker.signal_ignored_already_shutting_down", signal=sig.name)
            return
        _logger.info("worker.signal_received", signal=sig.name)
        self.request_shutdown()

    # ─── HTTP ─────────────────────────────────────────────────────────

    async def _start_http(self, stats: StatsAggregator, queue: QueueManager) -> None:
        http = self._config.http
        server = _EmbeddedServer(
            uvicorn.Config(
                create_app(stats, queue),
                host=http.host,
                port=http.port,
                log_config=None,
                access_log=False,
                lifespan="off",
            )
        )
        self._server = server
        self._server_task = asyncio.create_task(server.serve(), name="http-server")
        self._server_task.add_done_callback(self._on_server_done)
        while not server.started:
            if self._server_task.done():
                raise ConfigurationError(f"HTTP server failed to bind {http.host}:{http.port}")
            await asyncio.sleep(0.05)
        _logger.info("worker.http_listening", host=http.host, port=http.port)

    def _on_server_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "worker.http_server_died")

    async def _stop_http(self) -> None:
        if self._server is None or self._server_task is None:
            return
        self._server.should_exit = True
        with contextlib.suppress(asyncio.CancelledError, SystemExit):
            await self._server_task
        self._server = None
        self._server_task = None


# ─── Core Functions (used by slicerd.cli) ─────────────────────────────


def start_worker(
    config: WorkerConfig,
    *,
    log_level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure logging and run the worker until it is signalled to stop."""
    from slicerd.core.logging import configure_logging

    configure_logging(
        level=(log_level or config.log_level).upper(),  # type: ignore[arg-type]
        format=log_format or config.log_format,  # type: ignore[arg-type]
        file_path=config.log_file,
    )
    _logger.info("worker.starting", pid=os.getpid(), config_file=str(config.config_file))
    asyncio.run(WorkerProcess(config).run())


__all__ = ["WorkerProcess", "build_storage", "drop_privileges", "start_worker"]
