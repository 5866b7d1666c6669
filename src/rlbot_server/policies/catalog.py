"""Catalog of policy classes selectable by bot type."""

from functools import partial
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from .base import BotPolicy

T = TypeVar("T", bound=BotPolicy)

PolicyFactory = Callable[[int], BotPolicy]


class PolicyCatalog:
    """Registry for creating bot policies by name."""

    def __init__(self):
        self._policies: Dict[str, Type[BotPolicy]] = {}

    def register(self, name: str) -> Callable[[Type[T]], Type[T]]:
        """Decorator to register a policy class.

        Args:
            name: Bot type tag to register the policy under

        Returns:
            Decorator function
        """
        key = name.strip().lower()
        if not key:
            raise ValueError("Policy name cannot be empty")

        def decorator(cls: Type[T]) -> Type[T]:
            if key in self._policies and self._policies[key] is not cls:
                raise ValueError(f"Duplicate policy registration: {key}")
            self._policies[key] = cls
            return cls

        return decorator

    def get(self, name: str) -> Optional[Type[BotPolicy]]:
        """Get a registered policy class, or None."""
        return self._policies.get(name.strip().lower())

    def create_factory(self, name: str, **options: Any) -> PolicyFactory:
        """Build a factory that constructs the named policy for an index.

        Args:
            name: Bot type tag
            **options: Keyword arguments for the policy constructor

        Returns:
            Callable taking the player index

        Raises:
            KeyError: If the policy is not registered
        """
        cls = self.get(name)
        if cls is None:
            raise KeyError(
                f"Policy '{name}' not found. Available: {self.names()}"
            )
        return partial(cls, **options)

    def names(self) -> List[str]:
        """List registered policy names."""
        return sorted(self._policies)

    def describe(self) -> Dict[str, str]:
        """Map each policy name to the first line of its docstring."""
        return {
            name: next(iter((cls.__doc__ or "").strip().splitlines()), "")
            for name, cls in sorted(self._policies.items())
        }


# Global catalog instance
catalog = PolicyCatalog()
