"""CLI entry point for the Marionette runner daemon."""

import asyncio
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from marionette_runner.config import RunnerConfig, get_default_config_path, load_config, save_config
from marionette_runner.daemon import RunnerDaemon

app = typer.Typer(
    name="marionette-runner",
    help="Remote browser-automation agent for Marionette",
    no_args_is_help=True,
)
console = Console()

ACCENT = "#7aa2f7"
ERROR = "#f7768e"


@app.command()
def run(
    config_file: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (default: ~/.config/marionette/runner.yaml)",
    ),
    server_url: str = typer.Option(None, "--server", "-s", help="Server URL (overrides config)"),
    headless: bool | None = typer.Option(
        None, "--headless/--headed", help="Run the browser headless"
    ),
) -> None:
    """Start the runner daemon: heartbeats plus job polling."""
    from marionette.main import configure_logging

    config = load_config(config_file)
    if server_url:
        config.server_url = server_url
    if headless is not None:
        config.headless = headless

    missing = [
        name
        for name, value in (
            ("client ID", config.client_id),
            ("API token", config.api_token),
            ("encryption key", config.encryption_key),
        )
        if not value
    ]
    if missing:
        console.print(f"[{ERROR}]Error:[/] Missing {', '.join(missing)}")
        console.print(
            "Set MARIONETTE_CLIENT_ID / MARIONETTE_API_TOKEN / MARIONETTE_ENCRYPTION_KEY "
            "or run [cyan]marionette-runner configure[/]"
        )
        raise typer.Exit(1)

    configure_logging()
    console.print(f"[{ACCENT}]Marionette Runner[/] starting...")
    console.print(f"  Server: [{ACCENT}]{config.server_url}[/]")
    console.print(f"  Client: [{ACCENT}]{config.client_id}[/]")
    console.print(f"  Polling: every {config.polling_interval:.0f}s")

    try:
        asyncio.run(_run_daemon(config))
    except KeyboardInterrupt:
        console.print(f"\n[{ACCENT}]Shutting down...[/]")


async def _run_daemon(config: RunnerConfig) -> None:
    """Run the daemon event loop."""
    daemon = RunnerDaemon(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, daemon.request_shutdown)

    await daemon.run()


@app.command()
def configure(
    server_url: str = typer.Option(..., "--server", "-s", help="Marionette server URL"),
    client_id: str = typer.Option(..., "--client-id", help="Client ID shown at registration"),
    headless: bool = typer.Option(False, "--headless/--headed"),
    config_file: Path = typer.Option(None, "--config", "-c", help="Where to save the config"),
) -> None:
    """Save connection settings. Secrets stay in the environment."""
    config = load_config(config_file)
    config.server_url = server_url
    config.client_id = client_id
    config.headless = headless
    save_config(config, config_file)
    console.print(f"Saved to [{ACCENT}]{config_file or get_default_config_path()}[/]")
    console.print("Export MARIONETTE_API_TOKEN and MARIONETTE_ENCRYPTION_KEY before running.")


@app.command()
def status(
    config_file: Path = typer.Option(None, "--config", "-c", help="Path to config file"),
) -> None:
    """Show the effective configuration and check the server with one heartbeat."""
    config = load_config(config_file)

    table = Table(title="Runner configuration")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("server_url", config.server_url)
    table.add_row("client_id", config.client_id or "-")
    table.add_row("api_token", "set" if config.api_token else "missing")
    table.add_row("encryption_key", "set" if config.encryption_key else "missing")
    table.add_row("headless", str(config.headless))
    table.add_row("polling_interval", f"{config.polling_interval}s")
    table.add_row("heartbeat_interval", f"{config.heartbeat_interval}s")
    console.print(table)

    if not (config.client_id and config.api_token):
        return

    async def _check() -> bool:
        daemon = RunnerDaemon(config)
        try:
            return await daemon.send_heartbeat()
        finally:
            await daemon.server.close()

    if asyncio.run(_check()):
        console.print(f"[{ACCENT}]Server reachable, credentials accepted[/]")
    else:
        console.print(f"[{ERROR}]Heartbeat failed[/]")
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
