"""Pytest fixtures for slicerd tests."""

from __future__ import annotations

import itertools
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import structlog

from slicerd.backends.base import QueueTransport, ReceivedMessage
from slicerd.backends.documents import SQLiteDocumentStore
from slicerd.backends.storage import LocalObjectStorage
from slicerd.daemon.config import QueueConfig, SlicerConfig
from slicerd.daemon.exceptions import TransientError
from slicerd.daemon.queue import QueueManager
from slicerd.slicing.pipeline import JobPipeline
from slicerd.slicing.runner import SlicerRunner
from slicerd.slicing.state import JobStateMachine
from slicerd.slicing.stats import StatsAggregator
from slicerd.slicing.workspace import Workspace

HIGH_URL = "https://sqs.test.local/000000000000/slicing-high"
LOW_URL = "https://sqs.test.local/000000000000/slicing-low"
COPY_SLICER = "cp {{ stl }} {{ gcode }}"


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog and root handlers around each test."""
    structlog.reset_defaults()
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


# ─── Fakes ─────────────────────────────────────────────────────────────


@dataclass
class _FakeMessage:
    message_id: int
    body: str
    receive_count: int = 0


class FakeTransport(QueueTransport):
    """In-memory lease queue keyed by URL.

    Each receive hands out a fresh receipt. Deleting or changing the
    visibility of a receipt that is not in flight raises TransientError,
    as a real queue rejects stale receipts.
    """

    def __init__(self) -> None:
        self.visible: dict[str, deque[_FakeMessage]] = {HIGH_URL: deque(), LOW_URL: deque()}
        self.in_flight: dict[str, tuple[str, _FakeMessage]] = {}
        self.deleted: list[tuple[str, str]] = []
        self.visibility_calls: list[tuple[str, str, int]] = []
        self.receive_calls: list[tuple[str, int, int]] = []
        self.fail_receive = False
        self.fail_visibility = False
        self.fail_depth = False
        self._ids = itertools.count(1)

    def send(self, url: str, body: dict[str, Any] | str) -> None:
        text = body if isinstance(body, str) else json.dumps(body)
        self.visible.setdefault(url, deque()).append(_FakeMessage(next(self._ids), text))

    async def receive(
        self,
        queue_url: str,
        *,
        visibility_seconds: int,
        wait_seconds: int = 0,
    ) -> ReceivedMessage | None:
        self.receive_calls.append((queue_url, visibility_seconds, wait_seconds))
        if self.fail_receive:
            raise TransientError("receive unavailable")
        queue = self.visible.setdefault(queue_url, deque())
        if not queue:
            return None
        message = queue.popleft()
        message.receive_count += 1
        receipt = f"rcpt-{message.message_id}-{message.receive_count}"
        self.in_flight[receipt] = (queue_url, message)
        return ReceivedMessage(receipt=receipt, body=message.body, receive_count=message.receive_count)

    async def delete(self, queue_url: str, receipt: str) -> None:
        if receipt not in self.in_flight:
            raise TransientError(f"receipt {receipt} is not in flight")
        del self.in_flight[receipt]
        self.deleted.append((queue_url, receipt))

    async def change_visibility(self, queue_url: str, receipt: str, seconds: int) -> None:
        self.visibility_calls.append((queue_url, receipt, seconds))
        if self.fail_visibility:
            raise TransientError("visibility unavailable")
        if receipt not in self.in_flight:
            raise TransientError(f"receipt {receipt} is not in flight")
        if seconds == 0:
            url, message = self.in_flight.pop(receipt)
            self.visible[url].append(message)

    async def depth(self, queue_url: str) -> int:
        if self.fail_depth:
            raise TransientError("depth unavailable")
        return len(self.visible.get(queue_url, ()))


class RecordingDocumentStore(SQLiteDocumentStore):
    """SQLite store that records every status write.

    ``on_status`` maps a status code to a hook run just before that write,
    e.g. to delete the job record mid-processing.
    """

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.writes: list[tuple[str, dict[str, Any], str]] = []
        self.on_status: dict[int, Callable[[str], Any]] = {}
        self.fail_status_writes = False

    async def update_job_status(
        self,
        job_record_id: str,
        slicing: dict[str, Any],
        gcode_file: str,
    ) -> int:
        hook = self.on_status.get(slicing["status"])
        if hook is not None:
            await hook(job_record_id)
        self.writes.append((job_record_id, slicing, gcode_file))
        if self.fail_status_writes:
            raise TransientError("document store unavailable")
        return await super().update_job_status(job_record_id, slicing, gcode_file)

    def statuses(self, job_record_id: str) -> list[int]:
        return [s["status"] for rid, s, _ in self.writes if rid == job_record_id]


class RecordingStorage(LocalObjectStorage):
    """Local storage that counts transfers and can fail uploads."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.downloads: list[tuple[str, str, Path]] = []
        self.uploads: list[tuple[Path, str, str]] = []
        self.fail_uploads = False

    async def download(self, bucket: str, key: str, local_path: Path) -> None:
        self.downloads.append((bucket, key, local_path))
        await super().download(bucket, key, local_path)

    async def upload(self, local_path: Path, bucket: str, key: str) -> None:
        self.uploads.append((local_path, bucket, key))
        if self.fail_uploads:
            raise TransientError("upload timed out")
        await super().upload(local_path, bucket, key)


# ─── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(
        queue_high=HIGH_URL,
        queue_low=LOW_URL,
        lease_seconds=60,
        renew_interval_seconds=30,
        poll_wait_seconds=0,
        idle_sleep_seconds=0.01,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def queue(transport: FakeTransport, queue_config: QueueConfig) -> QueueManager:
    return QueueManager(transport, queue_config)


@pytest.fixture
async def documents(tmp_path: Path) -> AsyncIterator[RecordingDocumentStore]:
    store = RecordingDocumentStore(tmp_path / "documents.db")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def storage(tmp_path: Path) -> RecordingStorage:
    root = tmp_path / "objects"
    (root / "models").mkdir(parents=True)
    (root / "models" / "part.stl").write_text("solid part\nendsolid part\n")
    (root / "models" / "profile.ini").write_text("layer_height = 0.2\n")
    return RecordingStorage(root)


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "working"
    path.mkdir()
    return path


@pytest.fixture
def slicer_config(work_dir: Path) -> SlicerConfig:
    return SlicerConfig(command=COPY_SLICER, work_dir=work_dir)


@pytest.fixture
def stats(documents: RecordingDocumentStore) -> StatsAggregator:
    return StatsAggregator(documents)


@pytest.fixture
def make_pipeline(
    queue: QueueManager,
    documents: RecordingDocumentStore,
    storage: RecordingStorage,
    work_dir: Path,
    stats: StatsAggregator,
) -> Callable[..., JobPipeline]:
    """Build a pipeline; ``command`` overrides the slicer template."""

    def _make(command: str = COPY_SLICER, timeout_seconds: float | None = None) -> JobPipeline:
        return JobPipeline(
            queue=queue,
            state=JobStateMachine(documents),
            storage=storage,
            runner=SlicerRunner(SlicerConfig(
                command=command, work_dir=work_dir, timeout_seconds=timeout_seconds,
            )),
            workspace=Workspace(work_dir),
            stats=stats,
        )

    return _make


@pytest.fixture
def request_body() -> Callable[..., dict[str, Any]]:
    """Build a valid slicing request body; keyword args override fields."""

    def _body(**overrides: Any) -> dict[str, Any]:
        body: dict[str, Any] = {
            "config_file": "https://s3.test.local/models/profile.ini",
            "gcode_file": "https://s3.test.local/results/jobs/42/part.gcode",
            "job_id": "P3D-0001-42",
            "job_oid": "5a1f00000000000000000042",
            "stl_file": "https://s3.test.local/models/part.stl",
        }
        body.update(overrides)
        return body

    return _body
