"""In-memory records for one slicing request."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


@dataclass
class ResourceRef:
    """One object-storage resource and its local working copy."""

    url: str
    bucket: str
    key: str
    local_path: Path


@dataclass
class StageTiming:
    """Duration of one pipeline stage.

    Serialized as ``[elapsed_ms, started_at, ended_at]`` with ISO-8601
    timestamps; an untouched stage is ``[0, None, None]``.
    """

    elapsed_ms: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    _started_mono: float | None = field(default=None, repr=False)

    def start(self) -> None:
        self.started_at = datetime.now(UTC)
        self.ended_at = None
        self._started_mono = time.monotonic()

    def finish(self) -> None:
        if self._started_mono is None:
            self.start()
        started = self._started_mono or time.monotonic()
        self.ended_at = datetime.now(UTC)
        self.elapsed_ms = int((time.monotonic() - started) * 1000)

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ms / 1000.0

    def as_triple(self) -> list[Any]:
        return [
            self.elapsed_ms,
            self.started_at.isoformat() if self.started_at else None,
            self.ended_at.isoformat() if self.ended_at else None,
        ]


@dataclass
class SlicingRequest:
    """A validated slicing request with its derived resources and timings.

    ``raw`` keeps a private deep copy of the inbound message so the queue
    payload is never mutated by processing. The resources stay None when
    the request is rejected before they could be derived.
    """

    job_id: str
    job_record_id: str
    handle: str
    stl: ResourceRef | None = None
    config: ResourceRef | None = None
    gcode: ResourceRef | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    download_time: StageTiming = field(default_factory=StageTiming)
    slicing_time: StageTiming = field(default_factory=StageTiming)
    upload_time: StageTiming = field(default_factory=StageTiming)

    @property
    def local_paths(self) -> list[Path]:
        return [r.local_path for r in (self.stl, self.config, self.gcode) if r is not None]


__all__ = ["ResourceRef", "SlicingRequest", "StageTiming"]
