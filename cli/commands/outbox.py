"""Outbox Commands - Inspect and repair the event outbox"""

import typer
from rich.console import Console

from ..client.endpoints import JobEngineClient, JobEngineError, resolve_base_url
from ..utils.formatting import create_counts_table, print_error, print_success

console = Console()
app = typer.Typer(name="outbox", help="Event outbox commands")


@app.command("stats")
def outbox_stats():
    """📊 Show outbox counts by status"""
    try:
        with JobEngineClient(resolve_base_url()) as client:
            stats = client.outbox_stats()

            console.print(
                create_counts_table("Outbox Events", stats.get("by_status", {}), "Status")
            )
            oldest = stats.get("oldest_pending_at")
            if oldest:
                console.print(f"Oldest pending event: [yellow]{oldest}[/yellow]")

    except JobEngineError as e:
        print_error(f"Failed to get outbox stats: {e}")
        raise typer.Exit(1) from None


@app.command("requeue")
def requeue_event(
    outbox_id: int = typer.Argument(..., help="Outbox row id of a failed event"),
):
    """🔁 Give a failed event another round of relay attempts"""
    try:
        with JobEngineClient(resolve_base_url()) as client:
            client.requeue_outbox(outbox_id)
            print_success(f"Outbox event {outbox_id} requeued")

    except JobEngineError as e:
        print_error(f"Failed to requeue event: {e}")
        raise typer.Exit(1) from None
