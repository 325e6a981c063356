"""Options that tune individual routing operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Hashable

QUORUM_KEY = "quorum"
"""Key under which the quorum option is stored in :attr:`RoutingOptions.other`."""

DEFAULT_QUORUM = 0

Option = Callable[["RoutingOptions"], None]


@dataclass
class RoutingOptions:
    """Settings for one routing operation, filled in by option callables."""

    offline: bool = False
    other: dict[Hashable, Any] = field(default_factory=dict)

    def apply(self, *options: Option) -> "RoutingOptions":
        """Apply ``options`` in order; any error an option raises propagates."""
        for option in options:
            option(self)
        return self

    @property
    def quorum_size(self) -> int:
        """The number of responses asked for; 0 means run the query to completion."""
        return self.other.get(QUORUM_KEY, DEFAULT_QUORUM)


def quorum(n: int) -> Option:
    """Ask for values from ``n`` peers before returning the best one.

    Zero means the query should complete instead of returning early.
    """

    def set_quorum(options: RoutingOptions) -> None:
        options.other[QUORUM_KEY] = n

    return set_quorum