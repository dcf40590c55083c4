"""Keyed registry of stores."""

from typing import Any, Callable, Dict, Iterator, Mapping, Optional, TypeVar

from .store import Store

T = TypeVar('T')


class Universe:
    """
    Manages many named stores.

    Stores are created lazily the first time ``get_store`` is called for a
    key; later calls return the existing store and ignore ``init``.
    """

    def __init__(self):
        self._stores: Dict[str, Store[Any]] = {}

    def get_store(self, key: str, init: Optional[Callable[[], T]] = None) -> Store[T]:
        store = self._stores.get(key)
        if store is None:
            store = Store(init() if init is not None else None)
            self._stores[key] = store
        return store

    def snapshot(self) -> Dict[str, Any]:
        """Plain ``{key: state}`` map of every known store."""
        return {key: store.get() for key, store in self._stores.items()}

    def restore(self, data: Mapping[str, Any]) -> None:
        """
        Restore store states from a snapshot.

        Existing stores are updated through ``set`` (notifying listeners);
        unknown keys get a new store. Keys absent from ``data`` are left alone.
        """
        for key, value in data.items():
            existing = self._stores.get(key)
            if existing is not None:
                existing.set(lambda _prev, v=value: v)
            else:
                self._stores[key] = Store(value)

    def hydrate_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        """Restore from an authoritative ``{state: {key: {state, version}}}`` snapshot."""
        records = snapshot.get("state") or {}
        self.restore({key: rec.get("state") for key, rec in records.items()})

    def delete(self, key: str) -> None:
        self._stores.pop(key, None)

    def clear(self) -> None:
        self._stores.clear()

    def keys(self) -> Iterator[str]:
        return iter(list(self._stores))

    def __contains__(self, key: object) -> bool:
        return key in self._stores

    def __len__(self) -> int:
        return len(self._stores)


__all__ = ['Universe']
