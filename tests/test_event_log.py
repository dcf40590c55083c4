"""
Tests for the server event log, state bus and authoritative storage.
"""

import pytest

from zuno.events import StateEvent, UniverseRecord
from zuno.server.bus import StateBus
from zuno.server.log import EventLog
from zuno.server.state import UniverseState


def _event(key: str = "k", state=None, version: int = 1) -> StateEvent:
    return StateEvent(key, state, version=version)


class TestEventLog:
    """Test the bounded event log."""

    def test_ids_are_global_and_monotonic(self):
        log = EventLog(10)
        ids = [log.append(_event(key)).event_id for key in ("a", "b", "a", "c")]
        assert ids == [1, 2, 3, 4]

    def test_get_events_after(self):
        """Replay returns every retained event newer than the cursor, in order."""
        log = EventLog(10)
        for i in range(5):
            log.append(_event(state=i))

        replay = log.get_events_after(2)
        assert [e.event_id for e in replay] == [3, 4, 5]
        assert [e.state for e in replay] == [2, 3, 4]
        assert log.get_events_after(5) == []

    def test_last_event_id(self):
        log = EventLog(10)
        assert log.get_last_event_id() == 0
        log.append(_event())
        log.append(_event())
        assert log.get_last_event_id() == 2

    def test_eviction_keeps_ids(self):
        """Evicted ids are never reused."""
        log = EventLog(3)
        for _ in range(5):
            log.append(_event())

        assert len(log) == 3
        assert log.evicted == 2
        assert log.get_oldest_event_id() == 3
        assert log.get_last_event_id() == 5
        assert log.append(_event()).event_id == 6

    def test_covers(self):
        log = EventLog(3)
        assert log.covers(0)

        for _ in range(5):
            log.append(_event())

        # retained: 3, 4, 5
        assert log.covers(2)
        assert log.covers(5)
        assert not log.covers(1)
        assert not log.covers(6)

    def test_covers_after_full_drain(self):
        log = EventLog(2)
        log.append(_event())
        assert log.covers(1)
        assert not log.covers(7)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            EventLog(0)


class TestStateBus:
    """Test in-process fan-out."""

    def test_publish_in_order(self):
        bus = StateBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("first", e.state)))
        bus.subscribe(lambda e: seen.append(("second", e.state)))

        bus.publish(_event(state=1))
        assert seen == [("first", 1), ("second", 1)]

    def test_unsubscribe(self):
        bus = StateBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()

        bus.publish(_event())
        assert seen == []
        assert bus.subscriber_count == 0

    def test_failing_listener_is_isolated(self):
        bus = StateBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)

        bus.publish(_event(state="ok"))
        assert [e.state for e in seen] == ["ok"]


class TestUniverseState:
    """Test authoritative records."""

    def test_current_defaults_to_version_zero(self):
        state = UniverseState()
        assert state.current("missing") == UniverseRecord(None, 0)
        assert state.get_record("missing") is None

    def test_update_uses_event_version(self):
        state = UniverseState()
        record = state.update(StateEvent("k", "v", version=4))
        assert record == UniverseRecord("v", 4)
        assert state.snapshot() == {"k": record}

    def test_update_without_version_increments(self):
        state = UniverseState()
        state.update(StateEvent("k", "a"))
        assert state.update(StateEvent("k", "b")).version == 2
