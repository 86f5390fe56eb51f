"""
CLI: ``jobspine jobs`` — job administration commands.
"""

from __future__ import annotations

import typer

from jobspine.cli.utils import (
    console,
    fail,
    make_manager,
    output_item,
    output_items,
    parse_params,
)
from jobspine.core.errors import JobSpineError
from jobspine.scheduling import JobStatus

app = typer.Typer(no_args_is_help=True)

_JOB_COLUMNS = ["id", "name", "job_type", "status", "priority", "cron_expression", "next_run_time", "retry_count"]
_EXECUTION_COLUMNS = ["id", "status", "trigger", "start_time", "end_time", "processing_time_ms", "node_id", "error_message"]


@app.command("list")
def list_jobs(
    include_all: bool = typer.Option(False, "--all", help="Include cancelled jobs"),
    tenant: str | None = typer.Option(None, "--tenant"),
    job_type: str | None = typer.Option(None, "--type"),
    status: JobStatus | None = typer.Option(None, "--status", case_sensitive=False),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List jobs."""
    try:
        jobs = make_manager(database).list_jobs(
            include_all, job_type=job_type, status=status, tenant_id=tenant
        )
    except JobSpineError as e:
        fail(e)
    output_items(jobs, as_json=json_out, title="Jobs", columns=_JOB_COLUMNS)


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show job details."""
    try:
        job = make_manager(database).get_job(job_id)
    except JobSpineError as e:
        fail(e)
    output_item(job, as_json=json_out, title=f"Job: {job.name}")


@app.command("pause")
def pause_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    actor: str | None = typer.Option(None, "--by", help="Recorded as updated_by"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Pause a scheduled job."""
    try:
        job = make_manager(database).pause_job(job_id, actor=actor)
    except JobSpineError as e:
        fail(e)
    console.print(f"[green]✓[/green] {job.name} is {job.status.value}")


@app.command("resume")
def resume_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    actor: str | None = typer.Option(None, "--by", help="Recorded as updated_by"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Resume a paused job."""
    try:
        job = make_manager(database).resume_job(job_id, actor=actor)
    except JobSpineError as e:
        fail(e)
    next_run = job.next_run_time.isoformat() if job.next_run_time else "-"
    console.print(f"[green]✓[/green] {job.name} is {job.status.value}, next run {next_run}")


@app.command("cancel")
def cancel_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    actor: str | None = typer.Option(None, "--by", help="Recorded as updated_by"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Cancel a job. Running attempts are not interrupted."""
    try:
        job = make_manager(database).cancel_job(job_id, actor=actor)
    except JobSpineError as e:
        fail(e)
    console.print(f"[green]✓[/green] {job.name} is {job.status.value}")


@app.command("history")
def job_history(
    job_id: str = typer.Argument(..., help="Job ID"),
    limit: int | None = typer.Option(None, "--limit", "-n", min=1),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a job's executions, newest first."""
    try:
        executions = make_manager(database).get_job_execution_history(job_id, limit)
    except JobSpineError as e:
        fail(e)
    output_items(executions, as_json=json_out, title=f"Executions: {job_id}", columns=_EXECUTION_COLUMNS)


@app.command("execute")
def execute_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    params: list[str] = typer.Option([], "--param", "-p", help="Parameter override key=value"),
    workers: list[str] = typer.Option([], "--worker", "-w", help="Worker import path (module:attr)"),
    node_id: str | None = typer.Option(None, "--node-id"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run a job now on this process, bypassing the poll wait."""
    overrides = parse_params(params)
    try:
        execution = make_manager(database, node_id=node_id, workers=workers).execute_job(job_id, overrides)
    except typer.BadParameter:
        raise
    except Exception as e:
        # Worker errors are already recorded as a failed execution.
        fail(e)
    output_item(execution, as_json=json_out, title=f"Execution: {execution.id}")


@app.command("locks")
def list_locks(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List active (unexpired) leases."""
    try:
        locks = make_manager(database).list_active_locks()
    except JobSpineError as e:
        fail(e)
    output_items(locks, as_json=json_out, title="Active Leases")
