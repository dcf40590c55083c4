"""
Conflict resolution policies.

A resolver is called as ``resolver(local, server, store_key)`` when the sync
endpoint rejects a write with a version conflict, and returns the state the
client wants to keep. Returning the server state ends the exchange;
anything else is re-sent on top of the server version.
"""

from enum import Enum
from typing import Any, Callable, Mapping, Union

from ..utils.errors import ConfigurationError

ConflictResolver = Callable[[Any, Any, str], Any]


class ConflictResolutionStrategy(Enum):
    """Built-in conflict resolution strategies."""
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE = "merge"


def server_wins(local: Any, server: Any, store_key: str) -> Any:
    return server


def client_wins(local: Any, server: Any, store_key: str) -> Any:
    return local


def merge(local: Any, server: Any, store_key: str) -> Any:
    """Shallow dict merge with local keys on top; server state for anything else."""
    if isinstance(local, Mapping) and isinstance(server, Mapping):
        return {**server, **local}
    return server


_STRATEGIES = {
    ConflictResolutionStrategy.SERVER_WINS: server_wins,
    ConflictResolutionStrategy.CLIENT_WINS: client_wins,
    ConflictResolutionStrategy.MERGE: merge,
}


def resolver_for(strategy: Union[str, ConflictResolutionStrategy, ConflictResolver, None]) -> ConflictResolver:
    """
    Turn a strategy name, enum member or callable into a resolver.

    Raises:
        ConfigurationError: If the name is not a known strategy
    """
    if strategy is None:
        return server_wins
    if isinstance(strategy, ConflictResolutionStrategy):
        return _STRATEGIES[strategy]
    if isinstance(strategy, str):
        try:
            return _STRATEGIES[ConflictResolutionStrategy(strategy.lower())]
        except ValueError as e:
            raise ConfigurationError(f"Unknown conflict strategy: {strategy}", cause=e) from e
    if callable(strategy):
        return strategy
    raise ConfigurationError(f"Invalid conflict resolver: {strategy!r}")


__all__ = [
    'ConflictResolver',
    'ConflictResolutionStrategy',
    'server_wins',
    'client_wins',
    'merge',
    'resolver_for',
]
