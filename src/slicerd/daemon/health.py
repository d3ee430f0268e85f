"""HTTP surface of the worker: liveness and stats.

- ``GET /info``: current UTC time as ``YYYY-MM-DD HH:MM:SS`` text, for
  load balancers and monitoring pings.
- ``GET /stats``: in-memory outcome counters merged with queue stats.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from slicerd import __version__
from slicerd.daemon.queue import QueueManager
from slicerd.slicing.stats import StatsAggregator


def create_app(
    stats: StatsAggregator,
    queue: QueueManager,
    title: str = "slicerd",
) -> FastAPI:
    """Create the FastAPI application serving ``/info`` and ``/stats``."""
    app = FastAPI(
        title=title,
        version=__version__,
        description="Slicing worker liveness and stats",
        docs_url=None,
        redoc_url=None,
    )

    @app.get("/info", response_class=PlainTextResponse, tags=["System"])
    async def info() -> str:
        return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")

    @app.get("/stats", tags=["System"])
    async def get_stats() -> dict[str, Any]:
        return {**stats.snapshot(), **(await queue.stats())}

    return app


__all__ = ["create_app"]
