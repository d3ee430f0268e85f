"""Invocation of the external slicing engine.

The command line is a Jinja2 template rendered with shell-quoted local
paths and run through the shell, so templates may use pipes and
redirection. Success is exit code zero; any other outcome is a
SlicerFailure.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path

import jinja2

from slicerd.core.constants import TRUNCATE_STDOUT_TAIL_CHARS
from slicerd.core.logging import get_logger
from slicerd.daemon.config import SlicerConfig
from slicerd.daemon.exceptions import ConfigurationError, SlicerFailure

_logger = get_logger("slicing.runner")


@dataclass
class SlicerResult:
    """Outcome of one successful slicer run."""

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float


def _tail(text: str) -> str:
    return text[-TRUNCATE_STDOUT_TAIL_CHARS:]


async def _kill_group(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it spawned, then reap it."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    await process.wait()


class SlicerRunner:
    """Renders and executes the slicer command."""

    def __init__(self, config: SlicerConfig) -> None:
        self._config = config
        env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False)
        try:
            self._template = env.from_string(config.command)
        except jinja2.TemplateSyntaxError as exc:
            raise ConfigurationError(f"invalid slicer command template: {exc}") from exc
        self.render(Path("config.ini"), Path("model.stl"), Path("model.gcode"))

    def render(self, config: Path, stl: Path, gcode: Path) -> str:
        try:
            return self._template.render(
                config=shlex.quote(str(config)),
                stl=shlex.quote(str(stl)),
                gcode=shlex.quote(str(gcode)),
                script_dir=shlex.quote(str(self._config.script_dir)),
            )
        except jinja2.UndefinedError as exc:
            raise ConfigurationError(f"slicer command template: {exc}") from exc

    async def run(self, config: Path, stl: Path, gcode: Path) -> SlicerResult:
        """Run the slicer to completion.

        Raises:
            SlicerFailure: On spawn failure, non-zero exit or timeout.
        """
        cmd = self.render(config, stl, gcode)
        timeout = self._config.timeout_seconds
        _logger.debug("slicer.starting", command=cmd, timeout_seconds=timeout)
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            _logger.warning("slicer.spawn_failed", error=str(exc))
            raise SlicerFailure(f"failed to start slicer: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout,
            )
        except TimeoutError:
            await _kill_group(process)
            _logger.warning("slicer.timeout", timeout_seconds=timeout)
            raise SlicerFailure(f"slicer timed out after {timeout}s") from None
        except asyncio.CancelledError:
            if process.returncode is None:
                await _kill_group(process)
            raise

        duration = time.monotonic() - start_time
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1

        if exit_code != 0:
            _logger.warning(
                "slicer.failed",
                exit_code=exit_code,
                stderr=_tail(stderr),
                duration_seconds=round(duration, 3),
            )
            raise SlicerFailure(
                f"slicer exited with code {exit_code}",
                exit_code=exit_code,
                stderr_tail=_tail(stderr),
            )

        _logger.debug(
            "slicer.finished",
            duration_seconds=round(duration, 3),
            stdout=_tail(stdout),
        )
        return SlicerResult(
            command=cmd,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )


__all__ = ["SlicerResult", "SlicerRunner"]
