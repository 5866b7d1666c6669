"""RLBot Server - Command Line Interface."""

import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .core.config import ServerConfig, config_to_yaml, load_config
from .core.errors import BindError, ConfigError
from .core.log import setup_logging
from .core.registry import BotRegistry
from .policies import catalog
from .server import EXIT_BIND_FAILURE, FrameDispatcher

app = typer.Typer(
    name="rlbot-server",
    help="RLBot Server - Serve bot controls to a running match",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("configs") / "server.yaml"


def resolve_config(
    config_path: Optional[Path],
    overrides: List[str],
    port: Optional[int] = None,
    tick_rate: Optional[float] = None,
    bot_type: Optional[str] = None,
    log_level: Optional[str] = None,
) -> ServerConfig:
    """Load config and fold in command-line options.

    Options given explicitly win over both the YAML file and dot-list
    overrides.
    """
    if config_path is None and DEFAULT_CONFIG.exists():
        config_path = DEFAULT_CONFIG

    extra = list(overrides)
    if port is not None:
        extra.append(f"port={port}")
    if tick_rate is not None:
        extra.append(f"tick_rate={tick_rate}")
    if bot_type is not None:
        extra.append(f"default_bot_type={bot_type}")
    if log_level is not None:
        extra.append(f"log_level={log_level}")

    try:
        return load_config(config_path, extra)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(EXIT_BIND_FAILURE)


@app.command()
def serve(
    overrides: Optional[List[str]] = typer.Argument(None, help="Config overrides, e.g. tick_budget=0.01"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
    tick_rate: Optional[float] = typer.Option(None, "--tick-rate", help="Engine tick rate (Hz)"),
    bot_type: Optional[str] = typer.Option(None, "--bot-type", "-b", help="Policy for unannounced bots"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Log level"),
):
    """Listen for the engine and serve controls until interrupted."""
    server_config = resolve_config(config, overrides or [], port, tick_rate, bot_type, log_level)
    setup_logging(server_config.log_level)

    if catalog.get(server_config.default_bot_type) is None:
        console.print(
            f"[yellow]Default bot type '{server_config.default_bot_type}' is not registered. "
            f"Available: {', '.join(catalog.names())}[/yellow]"
        )

    registry = BotRegistry(
        retry_backoff=server_config.factory_retry_backoff,
        retry_max=server_config.factory_retry_max,
    )
    dispatcher = FrameDispatcher(server_config, registry)

    try:
        dispatcher.bind()
    except BindError as e:
        logger.critical("%s", e)
        raise typer.Exit(EXIT_BIND_FAILURE)

    def handle_signal(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        dispatcher.shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    exit_code = dispatcher.serve_forever()
    raise typer.Exit(exit_code)


@app.command()
def policies():
    """List available bot types."""
    table = Table(title="Bot Policies")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for name, description in catalog.describe().items():
        table.add_row(name, description)

    console.print(table)


@app.command("config")
def show_config(
    overrides: Optional[List[str]] = typer.Argument(None, help="Config overrides"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Print the effective configuration."""
    server_config = resolve_config(config, overrides or [])
    console.print(config_to_yaml(server_config), highlight=False)
    console.print(
        f"[dim]Effective tick budget: {server_config.effective_tick_budget * 1000:.2f}ms[/dim]"
    )


def main():
    app()


if __name__ == "__main__":
    main()
