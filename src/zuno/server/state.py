"""Authoritative in-memory storage of store values and versions."""

from typing import Dict, Optional

from ..events import StateEvent, UniverseRecord


class UniverseState:
    """Map of store key to its authoritative record."""

    def __init__(self):
        self._records: Dict[str, UniverseRecord] = {}

    def get_record(self, store_key: str) -> Optional[UniverseRecord]:
        return self._records.get(store_key)

    def current(self, store_key: str) -> UniverseRecord:
        """Record for ``store_key``, or the empty version-0 record."""
        return self._records.get(store_key) or UniverseRecord()

    def update(self, event: StateEvent) -> UniverseRecord:
        """
        Store the event's state.

        Uses the event's version when the engine assigned one, otherwise the
        next version after the current record.
        """
        version = event.version
        if version is None:
            version = self.current(event.store_key).version + 1
        record = UniverseRecord(state=event.state, version=version)
        self._records[event.store_key] = record
        return record

    def snapshot(self) -> Dict[str, UniverseRecord]:
        return dict(self._records)

    def __len__(self) -> int:
        return len(self._records)


__all__ = ['UniverseState']
