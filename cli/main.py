"""Job Engine CLI - Main Entry Point"""

import asyncio
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from jobengine.config.logging import setup_logging
from jobengine.config.settings import get_settings
from jobengine.v1.core.exceptions import JobEngineException
from jobengine.v1.jobs.drain import DrainReport
from jobengine.v1.jobs.engine import JobEngine
from jobengine.v1.jobs.registry_init import register_job_handlers

from .client.endpoints import JobEngineClient, resolve_base_url
from .commands import jobs, outbox
from .utils.formatting import print_error, print_info, print_warning

console = Console()

app = typer.Typer(
    name="jobengine",
    help="⚙️ Job Engine - background job processing CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(outbox.app, name="outbox")


async def _run_worker(engine: JobEngine) -> DrainReport:
    """Run the engine until SIGINT or SIGTERM, then drain."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        return await engine.run_until(stop_event)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


@app.command()
def worker(
    handlers: list[str] = typer.Option(
        [], "--handlers", "-H", help="Extra modules that register job handlers"
    ),
):
    """🛠️ Run a job worker until interrupted"""
    settings = get_settings()
    if handlers:
        settings = settings.model_copy(
            update={"handler_modules": [*settings.handler_modules, *handlers]}
        )
    setup_logging(settings)

    registry = register_job_handlers(settings=settings)
    if not registry.list():
        print_warning("No job handlers registered; every job will fail")

    engine = JobEngine(settings, registry=registry)
    try:
        report = asyncio.run(_run_worker(engine))
    except JobEngineException as e:
        print_error(f"Worker failed to start: {e.message}")
        raise typer.Exit(1) from None

    if not report.completed:
        print_warning(
            f"Drain timed out after {report.elapsed_s:.1f}s, "
            f"{report.abandoned} job(s) abandoned"
        )
        raise typer.Exit(1)

    print_info(f"Worker stopped cleanly in {report.elapsed_s:.1f}s")


@app.command()
def status():
    """📊 Check admin API status and connectivity"""
    base_url = resolve_base_url()
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobEngineClient(base_url) as client:
            health = client.health_check()

            engine = health.get("engine") or {}
            console.print(Panel(
                f"🚀 [green]Connected Successfully![/green]\n\n"
                f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
                f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
                f"• Database: [cyan]{'up' if health.get('database', {}).get('connected') else 'down'}[/cyan]\n"
                f"• In flight: [cyan]{engine.get('in_flight', '—')}[/cyan]\n"
                f"• API URL: [blue]{base_url}[/blue]",
                title="System Status",
                border_style="green"
            ))

    except Exception as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the Job Engine API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"You can point the CLI elsewhere with:\n"
            f"[cyan]export JOBENGINE_API_URL=<url>[/cyan]",
            title="Connection Error",
            border_style="red"
        ))
        raise typer.Exit(1)


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(Panel(
        f"⚙️ [bold cyan]Job Engine CLI[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan"
    ))


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    ⚙️ Job Engine CLI

    Run workers, submit jobs and inspect the ledger and event outbox.
    """
    if version:
        from . import __version__
        console.print(f"Job Engine CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
