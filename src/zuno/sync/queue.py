"""
Offline queue for writes that could not reach the sync endpoint.

Entries for the same key are coalesced: one entry survives, carrying the
earliest ``base_version`` of the pending chain and the latest ``state``.
The surviving entry keeps the queue position of the first write.
"""

from collections import OrderedDict
from typing import Iterable, Iterator, List, Optional

from ..events import StateEvent
from ..utils.logging import get_logger

logger = get_logger("zuno.sync.queue")


def coalesce(events: Iterable[StateEvent]) -> List[StateEvent]:
    """Collapse a sequence of pending writes to one per key, in first-seen order."""
    merged: "OrderedDict[str, StateEvent]" = OrderedDict()
    for event in events:
        earlier = merged.get(event.store_key)
        if earlier is None:
            merged[event.store_key] = event
        else:
            merged[event.store_key] = event.evolve(base_version=earlier.base_version)
    return list(merged.values())


class OfflineQueue:
    """FIFO of pending outgoing writes, at most one per key."""

    def __init__(self):
        self._entries: "OrderedDict[str, StateEvent]" = OrderedDict()

    def enqueue(self, event: StateEvent) -> StateEvent:
        """
        Add a write, coalescing with any pending write for the same key.

        Returns:
            The entry now queued for the key
        """
        earlier = self._entries.get(event.store_key)
        if earlier is not None:
            event = event.evolve(base_version=earlier.base_version)
            logger.debug(
                "queue_coalesced",
                store_key=event.store_key,
                base_version=event.base_version,
            )
        self._entries[event.store_key] = event
        return event

    def coalesce(self) -> List[StateEvent]:
        """Current entries in flush order."""
        return list(self._entries.values())

    def peek(self) -> Optional[StateEvent]:
        for event in self._entries.values():
            return event
        return None

    def pop_front(self) -> Optional[StateEvent]:
        if not self._entries:
            return None
        _, event = self._entries.popitem(last=False)
        return event

    def requeue_front(self, event: StateEvent) -> StateEvent:
        """
        Put a popped entry back at the head after a failed send.

        A write queued for the same key in the meantime is folded into it,
        keeping the popped entry's base version.
        """
        later = self._entries.pop(event.store_key, None)
        if later is not None:
            event = later.evolve(base_version=event.base_version)
        self._entries[event.store_key] = event
        self._entries.move_to_end(event.store_key, last=False)
        return event

    def has(self, store_key: str) -> bool:
        return store_key in self._entries

    def clear(self) -> None:
        self._entries.clear()

    def __iter__(self) -> Iterator[StateEvent]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


__all__ = ['OfflineQueue', 'coalesce']
