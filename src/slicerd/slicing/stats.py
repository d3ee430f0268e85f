"""Stats aggregation for slicing outcomes.

``StatsAggregator`` owns the process-wide counters exposed on ``/stats``
and mirrors each permanent outcome into two persisted documents: the
bucket of the current UTC hour and the lifetime document. Slicer
failures and cancellations are counted in both documents, not only the
hourly one. Persisted writes are detached; their failures only reach
the log.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from slicerd.backends.base import DocumentStore
from slicerd.core.constants import SECONDS_PER_HOUR, STATS_LIFETIME_KEY
from slicerd.core.logging import get_logger
from slicerd.daemon.task_utils import DetachedTasks

_logger = get_logger("slicing.stats")


def hourly_stats_key(when: datetime | float | None = None) -> str:
    """Stats key of the hour containing ``when`` (default: now).

    Shaped like a 12-byte object id: eight hex digits of the hour's start
    in seconds since the epoch, then sixteen zeros.
    """
    if when is None:
        seconds = time.time()
    elif isinstance(when, datetime):
        seconds = when.timestamp()
    else:
        seconds = float(when)
    hour_start = int(seconds) - int(seconds) % SECONDS_PER_HOUR
    return f"{hour_start:08x}" + "0" * 16


class StatsAggregator:
    """In-memory outcome counters plus best-effort persisted increments."""

    def __init__(
        self,
        documents: DocumentStore | None = None,
        *,
        detached: DetachedTasks | None = None,
    ) -> None:
        self._documents = documents
        self._detached = detached or DetachedTasks(_logger, "stats.persist_failed")
        self.jobs_succeeded = 0
        self.jobs_failed = 0
        self.jobs_failed_slicing = 0
        self.jobs_canceled = 0
        self.total_slicing_time = 0.0

    @property
    def detached(self) -> DetachedTasks:
        return self._detached

    def add_slicing_time(self, seconds: float) -> None:
        """Accumulate time spent in successful slicer runs."""
        self.total_slicing_time += seconds

    def record_success(self, slicing_seconds: float) -> None:
        """Count a sliced job. ``slicing_seconds`` is persisted only; the
        in-memory total grows through ``add_slicing_time``.
        """
        self.jobs_succeeded += 1
        self._persist({"slicing_succeeded": 1, "slicing_seconds": slicing_seconds})

    def record_slicer_failure(self) -> None:
        self.jobs_failed_slicing += 1
        self._persist({"slicing_failed": 1})

    def record_canceled(self) -> None:
        self.jobs_canceled += 1
        self._persist({"slicing_canceled": 1})

    def record_failure(self) -> None:
        """Count a retryable failure. Not persisted; the message is retried."""
        self.jobs_failed += 1

    def _persist(self, increments: dict[str, float]) -> None:
        if self._documents is None:
            return
        for key in (hourly_stats_key(), STATS_LIFETIME_KEY):
            self._detached.spawn(
                self._documents.increment_stats(key, increments),
                name=f"stats-{key}",
            )

    def snapshot(self) -> dict[str, Any]:
        return {
            "jobsSucceeded": self.jobs_succeeded,
            "jobsFailed": self.jobs_failed,
            "jobsFailedSlicing": self.jobs_failed_slicing,
            "jobsCanceled": self.jobs_canceled,
            "totalSlicingTime": self.total_slicing_time,
        }


__all__ = ["StatsAggregator", "hourly_stats_key"]
