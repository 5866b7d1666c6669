"""Logging setup for the server process."""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO", console: Optional[Console] = None) -> None:
    """Route the standard logging tree through Rich.

    Args:
        level: Root log level name
        console: Console to render to (stderr by default)
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    logging.basicConfig(
        level=level.upper(),
        format="%(threadName)s %(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )
