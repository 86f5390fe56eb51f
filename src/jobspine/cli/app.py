"""
Root Typer application for the jobspine CLI.
"""

from __future__ import annotations

import signal
import threading

import typer
from typer import Typer

from jobspine.cli.utils import console, fail, get_connection, load_settings, make_manager
from jobspine.core.errors import JobSpineError
from jobspine.core.logging import configure_logging

app = Typer(
    name="jobspine",
    help="jobspine — lease-based distributed job scheduling.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from jobspine import __version__

        typer.echo(f"jobspine {__version__}")
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
    """jobspine CLI — run nodes and administer jobs."""


# ── Node commands ────────────────────────────────────────────────────────


@app.command("init-db")
def init_db(
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL or path"),
) -> None:
    """Initialise database schema (create tables)."""
    from jobspine.core.schema import create_tables

    try:
        conn = get_connection(database)
        created = create_tables(conn)
    except JobSpineError as e:
        fail(e)
    if created:
        console.print(f"[green]✓[/green] Created tables: {', '.join(created)}")
    else:
        console.print("[green]✓[/green] Tables already exist")


@app.command("run")
def run(
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL or path"),
    node_id: str | None = typer.Option(None, "--node-id", help="Stable identity of this node"),  # noqa: UP007
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between polls"),  # noqa: UP007
    workers: list[str] = typer.Option([], "--worker", "-w", help="Worker import path (module:attr)"),
) -> None:
    """Start a scheduling node and run until interrupted.

    Example::

        jobspine run -d sqlite:///jobs.db --node-id node-a -w banking.jobs:WORKERS
    """
    settings = load_settings(database, node_id)
    if poll_interval is not None:
        settings = settings.model_copy(update={"poll_interval_seconds": poll_interval})
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    try:
        manager = make_manager(settings=settings, workers=workers)
        recovered = manager.start()
    except JobSpineError as e:
        fail(e)

    console.print(
        f"[bold green]Started jobspine node[/bold green] {manager.node_id} "
        f"(poll={settings.poll_interval_seconds}s, "
        f"concurrency={settings.max_concurrent_jobs}, "
        f"workers={len(manager.registry)}, recovered={len(recovered)})"
    )

    stop = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        console.print("\n[yellow]Node stopped by user[/yellow]")
    finally:
        signal.signal(signal.SIGTERM, previous)
        manager.stop()


# ── Sub-command registration ─────────────────────────────────────────────

from jobspine.cli.jobs import app as jobs_app  # noqa: E402

app.add_typer(jobs_app, name="jobs", help="Job administration.")
