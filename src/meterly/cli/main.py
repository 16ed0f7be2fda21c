"""
Command-line interface for meterly.

Runs the API server and the job worker, and inspects configuration and
queue state.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from meterly import __version__
from meterly.core.config import Settings, get_settings
from meterly.scheduling.queue import JobType
from meterly.storage.backend import MemoryStorage, create_storage
from meterly.tenancy import TenantRegistry
from meterly.utils.logging import setup_logging
from meterly.utils.metrics import metrics

app = typer.Typer(
    name="meterly",
    help="Usage metering and progressive billing core",
    no_args_is_help=True,
)
console = Console()


def load_settings(config_file: Optional[Path]) -> Settings:
    """Settings from a YAML file when given, else from the environment."""
    if config_file is not None:
        return Settings.from_yaml(config_file)
    return get_settings()


def build_registry(settings: Settings) -> TenantRegistry:
    storage = create_storage(settings.redis)
    if isinstance(storage, MemoryStorage):
        console.print("[yellow]Redis not configured, using in-memory storage[/yellow]")
    return TenantRegistry(storage, settings, metrics=metrics)


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold cyan]meterly[/bold cyan] v{__version__}")


@app.command()
def config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Show current configuration."""
    settings = load_settings(config_file)

    table = Table(title="meterly Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Environment", settings.environment)
    table.add_row("Debug", str(settings.debug))
    table.add_row("Log Level", settings.meterly.log_level)
    table.add_row("Log Format", settings.meterly.log_format)
    table.add_row("Redis", "configured" if settings.redis.is_configured else "in-memory")
    table.add_row("Max Batch Size", str(settings.ingestion.max_batch_size))
    table.add_row("Progressive Delay", f"{settings.scheduler.progressive_delay_seconds}s")
    table.add_row("Worker Poll Interval", f"{settings.scheduler.poll_interval_seconds}s")
    table.add_row("Job Max Attempts", str(settings.scheduler.max_attempts))
    table.add_row("Embedded Worker", str(settings.scheduler.embedded_worker))
    table.add_row("Server Host", settings.server.host)
    table.add_row("Server Port", str(settings.server.port))
    table.add_row("Tenant Header", settings.server.tenant_header)

    console.print(table)

    currencies = settings.meterly.supported_currencies
    console.print(
        f"\n[bold]Currencies:[/bold] {', '.join(currencies) if currencies else 'all known'}"
    )


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
):
    """Start the API server."""
    from meterly.api.server import run_server

    settings = get_settings()
    host = host or settings.server.host
    port = port or settings.server.port

    console.print(Panel(
        f"Starting meterly API server\n"
        f"Host: [cyan]{host}[/cyan]\n"
        f"Port: [cyan]{port}[/cyan]\n"
        f"Docs: [link]http://{host}:{port}/docs[/link]",
        title="meterly Server",
    ))

    run_server(host=host, port=port, reload=reload or settings.server.reload)


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Deliver due jobs once and exit"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Run the job worker that delivers progressive billing checks."""
    settings = load_settings(config_file)
    setup_logging()
    registry = build_registry(settings)
    job_worker = registry.build_worker()

    async def run():
        if once:
            delivered = await job_worker.run_once()
            console.print(f"[green]Delivered {delivered} job(s)[/green]")
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        console.print(Panel(
            f"Polling every [cyan]{settings.scheduler.poll_interval_seconds}s[/cyan]\n"
            f"Max attempts: [cyan]{settings.scheduler.max_attempts}[/cyan]",
            title="meterly Worker",
        ))
        await job_worker.run_forever(stop)

    asyncio.run(run())


@app.command()
def queue(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Show pending, due and in-flight jobs per queue."""
    settings = load_settings(config_file)
    registry = build_registry(settings)

    async def run():
        table = Table(title="Job Queues", show_header=True)
        table.add_column("Queue", style="cyan")
        table.add_column("Pending", justify="right")
        table.add_column("Due", justify="right")
        table.add_column("In flight", justify="right")

        for job_type in JobType:
            pending = await registry.queue.pending(job_type)
            due = await registry.queue.due(job_type)
            in_flight = await registry.queue.in_flight(job_type)
            table.add_row(job_type.value, str(pending), str(due), str(in_flight))

        console.print(table)

    asyncio.run(run())


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
