"""
Bounded, append-only log of accepted state events.

Every appended event receives the next id from a single counter that is
never reused, even after old entries are evicted.
"""

import threading
from collections import deque
from typing import Deque, List

from ..events import StateEvent

DEFAULT_CAPACITY = 1000


class EventLog:
    """Ring buffer of accepted events with backfill queries."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("EventLog capacity must be at least 1")
        self.capacity = capacity
        self._entries: Deque[StateEvent] = deque(maxlen=capacity)
        self._next_event_id = 1
        self._evicted = 0
        self._lock = threading.Lock()

    def append(self, event: StateEvent) -> StateEvent:
        """Assign the next event id, store the event and return it."""
        with self._lock:
            stamped = event.evolve(event_id=self._next_event_id)
            self._next_event_id += 1
            if len(self._entries) == self.capacity:
                self._evicted += 1
            self._entries.append(stamped)
        return stamped

    def get_events_after(self, last_event_id: int) -> List[StateEvent]:
        """All retained events with ``event_id > last_event_id``, oldest first."""
        with self._lock:
            return [e for e in self._entries if e.event_id > last_event_id]

    def get_last_event_id(self) -> int:
        """Newest retained id, or 0 when empty."""
        with self._lock:
            return self._entries[-1].event_id if self._entries else 0

    def get_oldest_event_id(self) -> int:
        """Oldest retained id, or 0 when empty."""
        with self._lock:
            return self._entries[0].event_id if self._entries else 0

    def covers(self, last_event_id: int) -> bool:
        """
        Whether a replay after ``last_event_id`` would be complete.

        False when events newer than the cursor were already evicted, or when
        the cursor is ahead of anything this log has issued.
        """
        with self._lock:
            issued = self._next_event_id - 1
            if last_event_id > issued:
                return False
            if not self._entries:
                return True
            return last_event_id >= self._entries[0].event_id - 1

    @property
    def evicted(self) -> int:
        return self._evicted

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ['EventLog', 'DEFAULT_CAPACITY']
