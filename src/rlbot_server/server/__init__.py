"""Socket server that dispatches game ticks to bots."""

from .connection import Connection
from .dispatcher import (
    EXIT_BIND_FAILURE,
    EXIT_DESYNC,
    EXIT_OK,
    DispatchStats,
    FrameDispatcher,
)

__all__ = [
    "Connection",
    "EXIT_BIND_FAILURE",
    "EXIT_DESYNC",
    "EXIT_OK",
    "DispatchStats",
    "FrameDispatcher",
]
