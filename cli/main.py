"""Job Queue CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from jobqueue.config.logging import setup_logging
from jobqueue.config.settings import Settings
from jobqueue.core.exceptions import HandlerNotFoundError
from jobqueue.infra.database import Database
from jobqueue.jobs.registry_init import bootstrap_job_registry
from jobqueue.jobs.worker import JobWorker, run_workers

from .commands import jobs
from .utils.formatting import print_error, print_info, print_success
from .utils.runtime import run_with_database

console = Console()

# Create main Typer app
app = typer.Typer(
    name="jobqueue",
    help="⚙️ Job Queue - durable background jobs CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")


@app.command("init-db")
def init_db():
    """🗄️ Create the jobs table (local and test databases)"""

    async def run(settings: Settings, database: Database):
        await database.create_all()

    run_with_database(run)
    print_success("Database initialized")
    print_info("Use [cyan]alembic upgrade head[/cyan] for production databases")


@app.command()
def worker(
    concurrency: int = typer.Option(
        1, "--concurrency", "-c", min=1, help="Workers to run in this process"
    ),
    once: bool = typer.Option(
        False, "--once", help="Sweep, process one batch and exit"
    ),
):
    """👷 Run job workers until interrupted"""

    async def run(settings: Settings, database: Database):
        registry = bootstrap_job_registry(settings)
        if once:
            single = JobWorker(settings, database, registry=registry)
            recovered = await single.sweep_stale_jobs()
            processed = await single.run_once()
            return processed, recovered
        await run_workers(settings, database, registry, concurrency)
        return None

    try:
        outcome = run_with_database(run)
    except HandlerNotFoundError as e:
        print_error(e.message)
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        print_info("Workers stopped")
        return

    if outcome is not None:
        processed, recovered = outcome
        print_success(f"Processed {processed} jobs, recovered {recovered} stale jobs")


@app.command()
def version():
    """📎 Show version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]Job Queue CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.callback()
def main():
    """
    ⚙️ Job Queue CLI

    Enqueue and inspect jobs, and run workers against the configured database.
    """
    setup_logging(Settings())


if __name__ == "__main__":
    app()
