"""Dataclass configuration for the bot server."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import yaml
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .errors import ConfigError


# Port the RLBot framework connects to by default
DEFAULT_BOT_PORT = 17357

# Rocket League physics tick rate
DEFAULT_TICK_RATE = 120.0


@dataclass
class ServerConfig:
    """Configuration for the frame dispatcher."""

    # Listening socket
    host: str = "127.0.0.1"
    port: int = DEFAULT_BOT_PORT
    accept_timeout: float = 0.5  # Poll interval for shutdown checks

    # Timing
    tick_rate: float = DEFAULT_TICK_RATE
    tick_budget: Optional[float] = None  # Seconds; defaults to one tick period

    # Dispatch
    max_workers: int = 8
    max_frame_size: int = 65_536

    # Bots
    default_bot_type: str = "constant"
    # Keyword options per bot type, e.g. {"torch": {"checkpoint_path": "..."}}
    policy_options: Dict[str, Any] = field(default_factory=dict)

    # Back-off after a failed policy construction (seconds, doubled per failure)
    factory_retry_backoff: float = 5.0
    factory_retry_max: float = 60.0

    # Shutdown
    shutdown_grace: float = 2.0

    # Logging
    log_level: str = "INFO"

    @property
    def effective_tick_budget(self) -> float:
        """Per-tick deadline in seconds."""
        if self.tick_budget is not None:
            return self.tick_budget
        return 1.0 / self.tick_rate

    def options_for(self, bot_type: str) -> Dict[str, Any]:
        """Get constructor options for a bot type."""
        return dict(self.policy_options.get(bot_type) or {})

    def validate(self) -> "ServerConfig":
        """Check value ranges.

        Returns:
            self, for chaining

        Raises:
            ConfigError: If any value is out of range
        """
        if not 0 <= self.port <= 65_535:
            raise ConfigError(f"port must be in [0, 65535], got {self.port}")
        if self.tick_rate <= 0:
            raise ConfigError(f"tick_rate must be positive, got {self.tick_rate}")
        if self.tick_budget is not None and self.tick_budget <= 0:
            raise ConfigError(f"tick_budget must be positive, got {self.tick_budget}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.max_frame_size < 16:
            raise ConfigError(f"max_frame_size too small: {self.max_frame_size}")
        if self.factory_retry_backoff < 0 or self.factory_retry_max < self.factory_retry_backoff:
            raise ConfigError("factory_retry_max must be >= factory_retry_backoff >= 0")
        if self.shutdown_grace < 0:
            raise ConfigError(f"shutdown_grace must be >= 0, got {self.shutdown_grace}")
        return self


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Sequence[str] = (),
) -> ServerConfig:
    """Load server configuration.

    Structured defaults are merged with an optional YAML file and then with
    dot-list overrides such as ``port=18000``.

    Args:
        path: Optional YAML config file
        overrides: ``key=value`` overrides applied last

    Returns:
        Validated server configuration

    Raises:
        ConfigError: If the file is missing or a value is invalid
    """
    schema = OmegaConf.structured(ServerConfig)
    layers = [schema]

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")
        # Allow the settings to live under a top-level "server" key
        layers.append(OmegaConf.create(data.get("server", data)))

    if overrides:
        layers.append(OmegaConf.from_dotlist(list(overrides)))

    try:
        merged = OmegaConf.merge(*layers)
        config = OmegaConf.to_object(merged)
    except OmegaConfBaseException as e:
        raise ConfigError(str(e)) from e

    return config.validate()


def config_to_yaml(config: ServerConfig) -> str:
    """Render a config as YAML."""
    return OmegaConf.to_yaml(OmegaConf.structured(config))
