"""Tests for slicerd.daemon.task_utils module."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from slicerd.daemon.task_utils import DetachedTasks, log_task_exception


async def _boom() -> None:
    raise RuntimeError("boom")


async def _ok() -> int:
    return 1


class TestLogTaskException:
    """Tests for log_task_exception."""

    @pytest.mark.asyncio
    async def test_failed_task_logged(self):
        logger = MagicMock()
        task = asyncio.create_task(_boom(), name="renewal")
        await asyncio.gather(task, return_exceptions=True)

        exc = log_task_exception(task, logger, "queue.renewal_loop_died")

        assert isinstance(exc, RuntimeError)
        logger.error.assert_called_once_with(
            "queue.renewal_loop_died", error="boom", task_name="renewal",
        )

    @pytest.mark.asyncio
    async def test_successful_task_not_logged(self):
        logger = MagicMock()
        task = asyncio.create_task(_ok())
        await task

        assert log_task_exception(task, logger, "x") is None
        logger.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_task_not_logged(self):
        logger = MagicMock()
        task = asyncio.create_task(asyncio.sleep(10))
        await asyncio.sleep(0)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert log_task_exception(task, logger, "x") is None
        logger.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_level_selects_method(self):
        logger = MagicMock()
        task = asyncio.create_task(_boom())
        await asyncio.gather(task, return_exceptions=True)

        log_task_exception(task, logger, "x", level="warning")

        logger.warning.assert_called_once()
        logger.error.assert_not_called()


class TestDetachedTasks:
    """Tests for DetachedTasks."""

    @pytest.mark.asyncio
    async def test_spawn_and_drain(self):
        detached = DetachedTasks(MagicMock(), "stats.failed")
        done = asyncio.Event()

        async def work() -> None:
            await asyncio.sleep(0.01)
            done.set()

        detached.spawn(work())
        assert detached.pending == 1

        await detached.drain()

        assert done.is_set()
        assert detached.pending == 0

    @pytest.mark.asyncio
    async def test_failure_logged_as_warning(self):
        logger = MagicMock()
        detached = DetachedTasks(logger, "stats.failed")

        detached.spawn(_boom(), name="stats-write")
        await detached.drain()

        logger.warning.assert_called_once_with("stats.failed", error="boom", task_name="stats-write")

    @pytest.mark.asyncio
    async def test_drain_when_empty(self):
        await DetachedTasks(MagicMock(), "x").drain()
