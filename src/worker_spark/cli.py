"""
Root Typer application for the ``worker-spark`` CLI.

Commands:
    run     Supervised worker: waits for recovery, restarts after crashes.
    worker  One unsupervised worker in the foreground.
    once    A single check-and-invoke cycle.
    config  Show the effective configuration.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from worker_spark import __version__
from worker_spark.config import ConfigState
from worker_spark.errors import SparkError
from worker_spark.logging_config import configure_logging
from worker_spark.result import Err, Ok

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="worker-spark",
    help="worker-spark: fire a PostgreSQL procedure on a fixed interval.",
    no_args_is_help=True,
)

EnvFileOption = typer.Option(None, "--env-file", "-e", help="Read settings from this .env file as well")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"worker-spark {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Run and inspect the spark worker."""


def _load_state(env_file: Path | None) -> ConfigState:
    try:
        return ConfigState(env_file)
    except SparkError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=1)


@app.command("run")
def run(
    env_file: Path | None = EnvFileOption,  # noqa: UP007
    no_restart: bool = typer.Option(False, "--no-restart", help="Do not restart the worker after a crash"),
) -> None:
    """Start the supervised spark worker.

    Example::

        WORKER_SPARK_DATABASE=app WORKER_SPARK_SCHEMA=public \\
        WORKER_SPARK_PROCEDURE=spark worker-spark run
    """
    from worker_spark.supervisor import supervisor_for

    state = _load_state(env_file)
    settings = state.settings
    configure_logging(level=settings.log_level, format=settings.log_format)

    supervisor = supervisor_for(settings, env_file, restart=not no_restart)
    raise typer.Exit(code=supervisor.run())


@app.command("worker")
def worker(env_file: Path | None = EnvFileOption) -> None:  # noqa: UP007
    """Run a single worker in the foreground, without supervision."""
    from worker_spark.worker import worker_main

    raise typer.Exit(code=worker_main(env_file))


@app.command("once")
def once(env_file: Path | None = EnvFileOption) -> None:  # noqa: UP007
    """Check for the procedure once and fire it if it exists."""
    from worker_spark.worker import run_once

    state = _load_state(env_file)
    configure_logging(level=state.settings.log_level, format=state.settings.log_format)
    config = state.current

    try:
        result = run_once(env_file, config_state=state)
    except SparkError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    match result:
        case Ok(status):
            console.print(f"[green]{config.qualified_name}: {status.value}[/green]")
        case Err(error):
            err_console.print(f"[red]Fatal: {error}[/red]")
            raise typer.Exit(code=1)


@app.command("config")
def show_config(env_file: Path | None = EnvFileOption) -> None:  # noqa: UP007
    """Show the effective configuration."""
    state = _load_state(env_file)
    settings = state.settings

    table = Table(title="worker-spark configuration")
    table.add_column("Option", style="bold")
    table.add_column("Value")
    for key, value in state.current.to_dict().items():
        table.add_row(key, "" if value is None else str(value))
    table.add_row("restart_seconds", str(settings.restart_seconds))
    table.add_row("log_level", settings.log_level)
    console.print(table)


if __name__ == "__main__":
    app()
