"""Command-line entry point for the AgentFleet worker."""

from __future__ import annotations

import asyncio
import sys
from typing import Annotated

import typer
from rich.console import Console

from . import __version__
from .config import get_settings
from .database import ChangeFeed
from .logging_config import configure_logging

app = typer.Typer(
    name="agentfleet-worker",
    help="AgentFleet worker - reconciles agent containers and relays agent chat",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"AgentFleet worker version: {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """AgentFleet worker."""


@app.command()
def run(
    host: Annotated[str, typer.Option("--host", help="Bind address for the health server")] = "0.0.0.0",
    port: Annotated[int | None, typer.Option("--port", "-p", help="Health server port")] = None,
) -> None:
    """Run the worker (reconciler, message relay and health server)."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "agentfleet.worker.main:app",
        host=host,
        port=port or settings.worker_port,
        log_level=settings.log_level.lower(),
    )


@app.command("reconcile-once")
def reconcile_once() -> None:
    """Run a single reconciliation pass and exit."""
    from .main import build_worker, shutdown_worker

    settings = get_settings()
    configure_logging(settings.log_level)

    async def _run() -> None:
        worker = await build_worker(settings)
        try:
            await worker.reconciler.reconcile()
        finally:
            await shutdown_worker(worker)

    asyncio.run(_run())
    console.print("[green]Reconciliation pass completed[/green]")


@app.command("cleanup-orphans")
def cleanup_orphans() -> None:
    """Remove containers whose agent no longer exists."""
    from .main import build_worker, shutdown_worker

    settings = get_settings()
    configure_logging(settings.log_level)

    async def _run() -> list[str]:
        worker = await build_worker(settings)
        try:
            return await worker.reconciler.cleanup_orphan_containers()
        finally:
            await shutdown_worker(worker)

    removed = asyncio.run(_run())
    console.print(f"[green]Removed {len(removed)} orphan container(s)[/green]")
    for name in removed:
        console.print(f"  {name}")


@app.command("install-triggers")
def install_triggers() -> None:
    """Install the change-notification triggers in the database."""
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(ChangeFeed(settings.listen_dsn).install_triggers())
    console.print("[green]Notification triggers installed[/green]")


def cli_main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
