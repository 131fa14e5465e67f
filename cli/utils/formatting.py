"""Rich Formatting Utilities for CLI Output"""

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from jobqueue.jobs.models import JobStatus
from jobqueue.jobs.schemas import JobResponse, JobStatsResponse

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _status(status: JobStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _truncate(text: str | None, length: int = 50) -> str:
    if not text:
        return "—"
    text = text[:length] + "..." if len(text) > length else text
    return escape(text)


def create_jobs_table(jobs: list[JobResponse]) -> Table:
    """Create a formatted table for a job list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Scheduled", justify="left", style="blue")
    table.add_column("Last Error", justify="left", style="white")

    for job in jobs:
        table.add_row(
            str(job.id)[:8],  # Short ID
            escape(job.type),
            _status(job.status),
            f"{job.attempts}/{job.max_attempts}",
            job.scheduled_at.strftime("%Y-%m-%d %H:%M:%S"),
            _truncate(job.last_error),
        )

    return table


def create_job_panel(job: JobResponse) -> Panel:
    """Create formatted panel for a single job"""
    content = f"""
🆔 [bold]ID:[/bold] [cyan]{job.id}[/cyan]
📝 [bold]Type:[/bold] [magenta]{escape(job.type)}[/magenta]
📊 [bold]Status:[/bold] {_status(job.status)}
🔁 [bold]Attempts:[/bold] [yellow]{job.attempts}/{job.max_attempts}[/yellow]
⭐ [bold]Priority:[/bold] {job.priority}
📁 [bold]Project:[/bold] {escape(job.project_id or "—")}
📅 [bold]Scheduled:[/bold] [blue]{job.scheduled_at.isoformat()}[/blue]
▶️ [bold]Started:[/bold] {job.started_at.isoformat() if job.started_at else "—"}
🏁 [bold]Completed:[/bold] {job.completed_at.isoformat() if job.completed_at else "—"}
🔒 [bold]Locked By:[/bold] {job.locked_by or "—"}
⚠️ [bold]Error Code:[/bold] {escape(job.error_code or "—")}
💬 [bold]Last Error:[/bold] {escape(job.last_error or "—")}
"""

    return Panel(content.strip(), title="Job Details", border_style="blue")


def create_stats_panel(stats: JobStatsResponse) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = "\n".join(
        f"• {status}: [cyan]{count}[/cyan]"
        for status, count in sorted(stats.by_status.items())
    )
    by_type = "\n".join(
        f"• {job_type}: [cyan]{count}[/cyan]"
        for job_type, count in sorted(stats.by_type.items())
    )

    content = f"""
📊 [bold blue]Queue Statistics[/bold blue]

• Total Jobs: [cyan]{stats.total_jobs}[/cyan]
• Queue Depth: [yellow]{stats.queue_depth}[/yellow]
• Failed (last hour): [red]{stats.failed_last_hour}[/red]

📝 [bold]Jobs by Status:[/bold]
{by_status or "• none"}

🔤 [bold]Jobs by Type:[/bold]
{by_type or "• none"}
"""

    return Panel(content.strip(), title="Job Statistics", border_style="green")
