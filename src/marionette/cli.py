"""Server-side CLI for operators.

- serve: Start the HTTP API
- worker: Start the arq maintenance worker
- init-db: Create tables (development)
- sweep: Expire overdue jobs once
"""

import asyncio

import typer
from rich.console import Console

from marionette import __version__
from marionette.config import settings

app = typer.Typer(
    name="marionette",
    help="Marionette server daemon",
    no_args_is_help=True,
)
console = Console()


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Bind host (default: settings)"),
    port: int = typer.Option(None, "--port", "-p", help="Bind port (default: settings)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from marionette.main import configure_logging

    configure_logging()
    console.print(f"[bold]Marionette[/bold] {__version__} on {host or settings.server_host}")
    uvicorn.run(
        "marionette.main:create_app",
        factory=True,
        host=host or settings.server_host,
        port=port or settings.server_port,
        reload=reload,
        log_config=None,
    )


@app.command()
def worker() -> None:
    """Start the arq worker that runs the expiry sweep."""
    from arq import run_worker

    from marionette.jobs.worker import WorkerSettings

    run_worker(WorkerSettings)  # type: ignore[arg-type]


@app.command("init-db")
def init_db() -> None:
    """Create all tables in the configured database."""
    from marionette.db import create_tables, dispose_engine
    from marionette.main import configure_logging

    configure_logging()

    async def _run() -> None:
        await create_tables()
        await dispose_engine()

    asyncio.run(_run())
    console.print("[green]Tables created[/green]")


@app.command()
def sweep() -> None:
    """Expire overdue jobs once and exit."""
    from marionette.db import dispose_engine
    from marionette.main import configure_logging
    from marionette.services import build_services

    configure_logging()

    async def _run() -> int:
        try:
            return await build_services().queue.expire_overdue()
        finally:
            await dispose_engine()

    expired = asyncio.run(_run())
    console.print(f"Expired [bold]{expired}[/bold] job(s)")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
