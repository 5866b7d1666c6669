"""Core module containing configuration, types and the bot registry."""

from .config import ServerConfig, load_config
from .errors import (
    BindError,
    ConfigError,
    DecodeError,
    PolicyConstructionError,
    ProtocolDesyncError,
    RLBotServerError,
)
from .registry import BotHandle, BotRegistry, BotState
from .types import NEUTRAL_OUTPUT, CarState, ControlOutput, Physics, Snapshot

__all__ = [
    "ServerConfig",
    "load_config",
    "BindError",
    "ConfigError",
    "DecodeError",
    "PolicyConstructionError",
    "ProtocolDesyncError",
    "RLBotServerError",
    "BotHandle",
    "BotRegistry",
    "BotState",
    "NEUTRAL_OUTPUT",
    "CarState",
    "ControlOutput",
    "Physics",
    "Snapshot",
]
