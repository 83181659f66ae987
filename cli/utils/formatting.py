"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "claimed": "cyan",
    "processing": "blue",
    "retry_scheduled": "yellow",
    "completed": "green",
    "failed": "red",
    "pending": "yellow",
    "relayed": "green",
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


def _styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create formatted panel for one ledger entry"""
    content = (
        f"• Job ID: [cyan]{job.get('job_id', '')}[/cyan]\n"
        f"• Type: [magenta]{job.get('job_type', '')}[/magenta]\n"
        f"• Status: {_styled_status(job.get('status', ''))}\n"
        f"• Attempt: [yellow]{job.get('attempt', 0)}[/yellow]\n"
        f"• Claimed at: {job.get('claimed_at') or '—'}\n"
        f"• Completed at: {job.get('completed_at') or '—'}"
    )
    if job.get("last_error"):
        content += f"\n\n[red]Last error:[/red] {job['last_error']}"

    return Panel(content, title="Job", border_style="cyan")


def create_counts_table(title: str, counts: dict[str, int], label: str) -> Table:
    """Create a two-column table of counts keyed by status or type"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column(label, justify="left", style="bold")
    table.add_column("Count", justify="right", style="cyan")

    for key, count in sorted(counts.items()):
        table.add_row(_styled_status(key), str(count))

    return table
