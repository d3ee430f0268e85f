"""Shared utilities for asyncio.Task lifecycle in the worker.

Provides ``log_task_exception`` to extract and log exceptions from
completed tasks, and ``DetachedTasks`` for fire-and-forget side-channel
work (stats writes) whose failures are observed only through logging.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Extract and log an exception from a completed task.

    Call this at the top of any ``add_done_callback`` handler to
    consistently surface exceptions from background tasks.

    Args:
        task: The completed task to inspect.
        logger: A structlog-style logger with ``.error()``/``.warning()`` methods.
        event: Event name (e.g. ``"queue.renewal_loop_died"``).
        level: Log method name, ``"error"`` (default) or ``"warning"``.

    Returns:
        The exception if one was found, ``None`` if the task completed
        normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), task_name=task.get_name())
    return exc


class DetachedTasks:
    """Owner of fire-and-forget tasks.

    Keeps a strong reference to every spawned task until it finishes
    (the event loop only holds weak ones) and logs failures at warning
    level. Nothing a detached task raises reaches the spawning code.
    """

    def __init__(self, logger: Any, event: str) -> None:
        self._logger = logger
        self._event = event
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        log_task_exception(task, self._logger, self._event, level="warning")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
