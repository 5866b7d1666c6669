"""Exception hierarchy for the bot server."""


class RLBotServerError(Exception):
    """Base class for all bot server errors."""


class ConfigError(RLBotServerError):
    """Invalid or inconsistent server configuration."""


class DecodeError(RLBotServerError):
    """A payload is truncated or structurally invalid.

    Transient: the frame is dropped and the connection keeps going.
    """


class ProtocolDesyncError(RLBotServerError):
    """The byte stream can no longer be split into frames."""


class BindError(RLBotServerError):
    """The listening socket could not be bound."""


class PolicyConstructionError(RLBotServerError):
    """A policy factory raised while building a bot."""

    def __init__(self, index: int, bot_type: str, cause: BaseException):
        super().__init__(f"Failed to construct '{bot_type}' policy for index {index}: {cause}")
        self.index = index
        self.bot_type = bot_type
        self.cause = cause
