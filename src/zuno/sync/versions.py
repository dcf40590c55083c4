"""Client-side table of last known versions per store key."""

from typing import Dict, Iterator, Mapping, Optional


class VersionTable:
    """
    Tracks the last known version of each store key.

    Versions only move forward through ``observe``. ``bump`` advances the
    local optimistic counter; ``replace`` is the explicit reset used when
    hydrating from an authoritative snapshot.
    """

    def __init__(self, initial: Optional[Mapping[str, int]] = None):
        self._versions: Dict[str, int] = dict(initial or {})

    def get(self, store_key: str, default: int = 0) -> int:
        return self._versions.get(store_key, default)

    def known(self, store_key: str) -> Optional[int]:
        return self._versions.get(store_key)

    def observe(self, store_key: str, version: int) -> bool:
        """
        Record a version seen from an authoritative source.

        Returns:
            True if the table advanced
        """
        if version <= self._versions.get(store_key, -1):
            return False
        self._versions[store_key] = version
        return True

    def bump(self, store_key: str) -> int:
        """Advance the local counter for a key and return the new value."""
        version = self._versions.get(store_key, 0) + 1
        self._versions[store_key] = version
        return version

    def merge(self, versions: Mapping[str, int]) -> None:
        """Take ``max(existing, received)`` for every key in ``versions``."""
        for key, version in versions.items():
            self.observe(key, version)

    def replace(self, versions: Mapping[str, int]) -> None:
        """Overwrite entries from a snapshot, regressing them if needed."""
        self._versions.update(versions)

    def as_dict(self) -> Dict[str, int]:
        return dict(self._versions)

    def __contains__(self, store_key: object) -> bool:
        return store_key in self._versions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._versions))

    def __len__(self) -> int:
        return len(self._versions)

    def __repr__(self) -> str:
        return f"VersionTable({self._versions!r})"


__all__ = ['VersionTable']
