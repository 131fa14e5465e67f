"""Jobs Commands - Enqueue, inspect and cancel jobs"""

import json
from datetime import datetime

import typer
from rich.console import Console
from rich.panel import Panel

from jobqueue.config.settings import Settings
from jobqueue.core.clock import ensure_utc
from jobqueue.core.exceptions import JobQueueException
from jobqueue.infra.database import Database
from jobqueue.jobs.models import JobStatus
from jobqueue.jobs.schemas import JobListFilters
from jobqueue.jobs.service import JobService

from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from ..utils.runtime import run_with_database

console = Console()
app = typer.Typer(name="jobs", help="Job management commands")


@app.command("enqueue")
def enqueue_job(
    job_type: str = typer.Argument(..., help="Job type"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON object or array payload"),
    delay: float = typer.Option(0, "--delay", "-d", help="Delay in seconds"),
    at: datetime | None = typer.Option(
        None, "--at", help="Run at this time (ISO 8601, UTC if no offset)"
    ),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", "-m", help="Attempt ceiling"
    ),
    priority: int = typer.Option(0, "--priority", help="Priority 0-1000"),
    project_id: str | None = typer.Option(None, "--project", help="Owning project"),
):
    """➕ Enqueue a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None

    options = {"max_attempts": max_attempts, "priority": priority, "project_id": project_id}

    async def run(settings: Settings, database: Database):
        service = JobService(settings)
        async with database.session() as session:
            if at is not None:
                return await service.schedule(
                    session, job_type, payload_data, ensure_utc(at), options
                )
            return await service.enqueue(
                session, job_type, payload_data, {**options, "delay_seconds": delay}
            )

    try:
        job = run_with_database(run)
    except JobQueueException as e:
        print_error(f"Failed to enqueue job: {e.message}")
        raise typer.Exit(1) from None

    print_success(f"Enqueued job {job.id}")
    console.print(
        f"📝 Type: [magenta]{job.type}[/magenta]  "
        f"📅 Scheduled: [blue]{job.scheduled_at.isoformat()}[/blue]"
    )


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID to show")):
    """🔍 Show detailed information about a job"""

    async def run(settings: Settings, database: Database):
        async with database.session() as session:
            return await JobService(settings).get(session, job_id)

    try:
        job = run_with_database(run)
    except JobQueueException as e:
        print_error(f"Failed to get job: {e.message}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))

    if job.payload:
        console.print(f"\n📦 [bold]Payload:[/bold] {json.dumps(job.payload)}")
    if job.result:
        console.print(f"\n🎯 [bold]Result:[/bold] {json.dumps(job.result)}")


@app.command("list")
def list_jobs(
    status: list[JobStatus] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by type"),
    project_id: str | None = typer.Option(None, "--project", help="Filter by project"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs, newest first"""
    filters = JobListFilters(
        status=status or None,
        type=job_type,
        project_id=project_id,
        limit=limit,
        offset=offset,
    )

    async def run(settings: Settings, database: Database):
        async with database.session() as session:
            return await JobService(settings).list_jobs(session, filters)

    jobs = run_with_database(run)

    if not jobs.jobs:
        console.print(
            Panel(
                "📭 [yellow]No jobs found![/yellow]",
                title="Empty Results",
                border_style="yellow",
            )
        )
        return

    console.print(create_jobs_table(jobs.jobs))
    console.print(
        f"\n📊 Showing [cyan]{len(jobs.jobs)}[/cyan] of [yellow]{jobs.total}[/yellow] jobs"
    )
    if jobs.has_more:
        console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID to cancel")):
    """🛑 Cancel a pending job"""

    async def run(settings: Settings, database: Database):
        async with database.session() as session:
            return await JobService(settings).cancel(session, job_id)

    try:
        job = run_with_database(run)
    except JobQueueException as e:
        print_error(f"Failed to cancel job: {e.message}")
        raise typer.Exit(1) from None

    print_success(f"Cancelled job {job.id}")


@app.command("stats")
def show_stats(
    project_id: str | None = typer.Option(None, "--project", help="Scope to project"),
):
    """📊 Show queue statistics"""

    async def run(settings: Settings, database: Database):
        async with database.session() as session:
            return await JobService(settings).get_stats(session, project_id)

    stats = run_with_database(run)
    console.print(create_stats_panel(stats))


@app.command("cleanup")
def cleanup_jobs(
    older_than_days: int | None = typer.Option(
        None, "--older-than-days", help="Retention window in days"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only count matching jobs"),
):
    """🧹 Delete finished jobs past the retention window"""

    async def run(settings: Settings, database: Database):
        async with database.session() as session:
            return await JobService(settings).cleanup_old_jobs(
                session, older_than_days=older_than_days, dry_run=dry_run
            )

    try:
        count = run_with_database(run)
    except JobQueueException as e:
        print_error(f"Cleanup failed: {e.message}")
        raise typer.Exit(1) from None

    if dry_run:
        print_info(f"{count} jobs would be deleted")
    elif count:
        print_success(f"Deleted {count} jobs")
    else:
        print_warning("No jobs matched the retention window")

