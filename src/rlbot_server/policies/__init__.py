"""Bot policies and the catalog that selects them by bot type."""

from .base import BotPolicy
from .catalog import PolicyCatalog, catalog
from .constant import ConstantPolicy, IdlePolicy
from .learned import ObservationBuilder, TorchPolicy
from .scripted import BallChasePolicy

__all__ = [
    "BotPolicy",
    "PolicyCatalog",
    "catalog",
    "ConstantPolicy",
    "IdlePolicy",
    "ObservationBuilder",
    "TorchPolicy",
    "BallChasePolicy",
]
