"""Jobs Commands - Submit and inspect background jobs"""

import json

import typer
from rich.console import Console

from ..client.endpoints import JobEngineClient, JobEngineError, resolve_base_url
from ..utils.formatting import (
    create_counts_table,
    create_job_panel,
    print_error,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Job submission and inspection commands")


@app.command("enqueue")
def enqueue_job(
    type: str = typer.Argument(..., help="Registered job type"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    job_id: str | None = typer.Option(None, "--job-id", help="Caller supplied job id"),
):
    """📨 Submit a job to the primary queue"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None

    if not isinstance(payload_data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    try:
        with JobEngineClient(resolve_base_url()) as client:
            result = client.enqueue_job(type, payload_data, job_id=job_id)
            print_success(f"Enqueued job {result.get('job_id')} ({type})")

    except JobEngineError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID to show"),
):
    """🔍 Show the ledger entry of a job"""
    try:
        with JobEngineClient(resolve_base_url()) as client:
            job = client.get_job(job_id)
            console.print(create_job_panel(job))

    except JobEngineError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def job_stats():
    """📊 Show ledger statistics"""
    try:
        with JobEngineClient(resolve_base_url()) as client:
            stats = client.job_stats()

            console.print(
                f"Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]  "
                f"In progress: [yellow]{stats.get('in_progress', 0)}[/yellow]"
            )
            console.print(
                create_counts_table("Jobs by Status", stats.get("by_status", {}), "Status")
            )
            console.print(
                create_counts_table("Jobs by Type", stats.get("by_type", {}), "Type")
            )

    except JobEngineError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None
