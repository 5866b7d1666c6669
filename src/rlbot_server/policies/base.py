"""Base bot policy interface."""

from abc import ABC, abstractmethod

from ..core.types import ControlOutput, Snapshot


class BotPolicy(ABC):
    """Abstract base class for bot policies.

    One instance controls one player index. The server calls
    process_input from a single worker thread per bot, so implementations
    do not need their own locking.
    """

    def __init__(self, index: int):
        self.index = index

    def get_index(self) -> int:
        """Get the player index this policy controls."""
        return self.index

    @abstractmethod
    def process_input(self, snapshot: Snapshot) -> ControlOutput:
        """Compute controls for one tick.

        Args:
            snapshot: Current game state addressed to this bot

        Returns:
            Controller output for this tick
        """
        pass

    def retire(self) -> None:
        """Release resources. Called once when the bot is removed."""
        pass
