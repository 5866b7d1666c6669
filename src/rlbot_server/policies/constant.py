"""Fixed-output policies."""

import logging
from typing import Optional

from ..core.types import NEUTRAL_OUTPUT, ControlOutput, Snapshot
from .base import BotPolicy
from .catalog import catalog

logger = logging.getLogger(__name__)


@catalog.register("constant")
class ConstantPolicy(BotPolicy):
    """Drives forward at full throttle every tick."""

    def __init__(self, index: int, output: Optional[ControlOutput] = None, **controls):
        super().__init__(index)
        if output is None:
            output = ControlOutput(**{"throttle": 1.0, **controls})
        self.output = output
        logger.debug("Constructing constant bot %d", index)

    def process_input(self, snapshot: Snapshot) -> ControlOutput:
        return self.output

    def retire(self) -> None:
        logger.debug("Retiring constant bot %d", self.index)


@catalog.register("idle")
class IdlePolicy(BotPolicy):
    """Holds the neutral output: no throttle, no buttons."""

    def process_input(self, snapshot: Snapshot) -> ControlOutput:
        return NEUTRAL_OUTPUT
