"""slicerd command line.

Thin Typer wrappers; the worker lifecycle lives in
``slicerd.daemon.process``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from pydantic import ValidationError
from rich.console import Console

from slicerd import __version__

if TYPE_CHECKING:
    from slicerd.daemon.config import WorkerConfig

console = Console()

app = typer.Typer(
    name="slicerd",
    help="Queue-driven slicing worker",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"slicerd v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """slicerd: claims slicing requests, runs the slicer, reports status."""


def _load(config_file: Path | None) -> WorkerConfig:
    from slicerd.daemon.config import load_config

    if config_file is not None and not config_file.exists():
        console.print(f"[red]Error:[/red] config file not found: {config_file}")
        raise typer.Exit(2)
    try:
        return load_config(config_file)
    except ValidationError as exc:
        console.print("[red]Invalid configuration:[/red]")
        console.print(str(exc), markup=False)
        raise typer.Exit(1) from None


@app.command()
def start(
    config_file: Annotated[
        Path | None, typer.Option("--config", "-c", help="YAML config file"),
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", "-l", help="Log level (overrides config)"),
    ] = None,
    log_format: Annotated[
        str | None, typer.Option("--log-format", help="console or json (overrides config)"),
    ] = None,
) -> None:
    """Start the slicing worker in the foreground."""
    config = _load(config_file)
    if log_format is not None and log_format not in ("console", "json"):
        console.print(f"[red]Error:[/red] unknown log format {log_format!r}")
        raise typer.Exit(2)

    from slicerd.daemon.process import start_worker

    start_worker(config, log_level=log_level, log_format=log_format)


@app.command("check-config")
def check_config(
    config_file: Annotated[
        Path | None, typer.Option("--config", "-c", help="YAML config file"),
    ] = None,
) -> None:
    """Validate a config file and print the effective settings."""
    config = _load(config_file)
    console.print("[green]Configuration is valid[/green]")
    console.print_json(data=config.model_dump(mode="json"))
    console.print(f"High-priority queue: {config.queue.high_priority_url}")
    console.print(f"Low-priority queue:  {config.queue.low_priority_url}")


@app.command("stats-key")
def stats_key(
    timestamp: Annotated[
        str | None,
        typer.Option("--timestamp", "-t", help="ISO-8601 time (default: now)"),
    ] = None,
    lifetime: Annotated[
        bool, typer.Option("--lifetime", help="Print the lifetime key instead"),
    ] = False,
) -> None:
    """Print the stats document key of an hour bucket."""
    from slicerd.core.constants import STATS_LIFETIME_KEY
    from slicerd.slicing.stats import hourly_stats_key

    if lifetime:
        typer.echo(STATS_LIFETIME_KEY)
        return
    when: datetime | None = None
    if timestamp is not None:
        try:
            when = datetime.fromisoformat(timestamp)
            if when.tzinfo is None:
                when = when.replace(tzinfo=UTC)
        except ValueError:
            console.print(f"[red]Error:[/red] not an ISO-8601 timestamp: {timestamp}")
            raise typer.Exit(2) from None
    typer.echo(hourly_stats_key(when))


if __name__ == "__main__":
    app()
