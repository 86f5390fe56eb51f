"""
CLI utility helpers — output formatting, connection and manager setup.
"""

from __future__ import annotations

import importlib
import json
from collections.abc import Iterable
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from jobspine.core.connection import open_connection
from jobspine.core.settings import JobSpineSettings, get_settings
from jobspine.scheduling import JobManager, Worker, create_job_manager

console = Console()
err_console = Console(stderr=True)


# ── Connection helpers ───────────────────────────────────────────────────


def load_settings(database: str | None = None, node_id: str | None = None) -> JobSpineSettings:
    """Settings from the environment with CLI overrides applied."""
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if database:
        overrides["database_url"] = database
    if node_id:
        overrides["node_id"] = node_id
    return settings.model_copy(update=overrides) if overrides else settings


def get_connection(database: str | None = None) -> Any:
    """Open the configured database.  Defaults to ``JOBSPINE_DATABASE_URL``."""
    conn, _dialect = open_connection(load_settings(database).database_url)
    return conn


def make_manager(
    database: str | None = None,
    *,
    node_id: str | None = None,
    workers: Iterable[str] = (),
    settings: JobSpineSettings | None = None,
) -> JobManager:
    """Create a wired, not yet started JobManager for CLI commands."""
    settings = settings or load_settings(database, node_id)
    conn, dialect = open_connection(settings.database_url)
    manager = create_job_manager(conn, settings=settings, dialect=dialect)
    for target in workers:
        for worker in load_workers(target):
            manager.register_worker(worker)
    return manager


def load_workers(target: str) -> list[Worker]:
    """Import workers from ``module:attribute``.

    The attribute may be a Worker, a Worker class (instantiated with no
    arguments), a list of workers, or a zero-argument factory returning
    either.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"Expected module:attribute, got {target!r}", param_hint="--worker")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import {module_name!r}: {e}", param_hint="--worker") from e
    try:
        obj = getattr(module, attr)
    except AttributeError as e:
        raise typer.BadParameter(f"{module_name!r} has no attribute {attr!r}", param_hint="--worker") from e

    if isinstance(obj, type) or (callable(obj) and not isinstance(obj, Worker)):
        obj = obj()
    if isinstance(obj, Worker):
        return [obj]
    if isinstance(obj, list | tuple):
        workers = list(obj)
        if all(isinstance(w, Worker) for w in workers):
            return workers
    raise typer.BadParameter(f"{target!r} does not provide Worker objects", param_hint="--worker")


def parse_params(pairs: Iterable[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse as JSON."""
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--param")
        try:
            params[key] = json.loads(raw)
        except ValueError:
            params[key] = raw
    return params


# ── Output helpers ───────────────────────────────────────────────────────


def fail(exc: Exception) -> NoReturn:
    """Print an engine error and exit with code 1."""
    err_console.print(f"[bold red]Error[/bold red] ({exc.__class__.__name__}): {exc}")
    raise typer.Exit(code=1)


def output_items(items: list[Any], *, as_json: bool = False, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of models (anything with ``to_dict``) to the terminal."""
    rows = [item.to_dict() for item in items]
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    _print_table(rows, title=title, columns=columns)


def output_item(item: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a single model to the terminal."""
    data = item.to_dict() if hasattr(item, "to_dict") else dict(item)
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    _print_dict(data, title=title)


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(rows: list[dict[str, Any]], *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of dicts as a Rich table."""
    columns = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in columns:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if row.get(c) is None else str(row.get(c)) for c in columns))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
