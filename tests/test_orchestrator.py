"""
Tests for the client-side dispatch orchestrator.
"""

import asyncio

import pytest

from zuno.core.universe import Universe
from zuno.events import DispatchReason, StateEvent, SyncResponse, Via
from zuno.server.engine import ApplyEngine
from zuno.sync.conflict import client_wins, merge
from zuno.sync.connectivity import Connectivity
from zuno.sync.orchestrator import DispatchOrchestrator
from zuno.sync.versions import VersionTable
from zuno.transport.base import SyncTransport
from zuno.transport.memory import InMemorySyncTransport
from tests.utils.async_helpers import RecordingSyncTransport


class AlwaysConflicting(SyncTransport):
    """Sync endpoint that rejects every write against a fixed record."""

    def __init__(self, state, version):
        self.current = {"state": state, "version": version}
        self.attempts = []

    async def publish(self, event):
        self.attempts.append(event)
        return SyncResponse(409, {"ok": False, "reason": "VERSION_CONFLICT", "current": self.current})

    async def fetch_snapshot(self):
        return {"state": {}, "lastEventId": 0}


class RecordingBroadcast:
    """Peer relay stand-in that keeps what it was asked to publish."""

    def __init__(self):
        self.published = []

    def publish(self, event):
        self.published.append(event)


class HeldSyncTransport(RecordingSyncTransport):
    """Holds publishes until ``release`` is set."""

    def __init__(self, inner):
        super().__init__(inner)
        self.held = asyncio.Event()
        self.release = asyncio.Event()

    async def publish(self, event):
        if not self.release.is_set():
            self.held.set()
            await self.release.wait()
        return await super().publish(event)


def make_orchestrator(engine: ApplyEngine, client_id: str, **kwargs) -> DispatchOrchestrator:
    kwargs.setdefault("sync", RecordingSyncTransport(InMemorySyncTransport(engine)))
    return DispatchOrchestrator(Universe(), VersionTable(), client_id, **kwargs)


def local(orchestrator: DispatchOrchestrator, key: str):
    return orchestrator.universe.get_store(key).get()


class TestOutgoingDispatch:
    """Test local writes against a reachable sync endpoint."""

    @pytest.mark.asyncio
    async def test_write_is_stamped_and_confirmed(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")

        result = await client.dispatch(StateEvent("counter", 1))

        assert result.ok
        assert result.status == 200
        assert result.body["event"]["version"] == 1
        sent = client.sync.sent[0]
        assert (sent.origin, sent.base_version) == ("a", 0)
        assert local(client, "counter") == 1
        assert client.versions.get("counter") == 1

    @pytest.mark.asyncio
    async def test_sequential_writes_chain_versions(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")

        for value in range(1, 4):
            assert (await client.dispatch(StateEvent("counter", value))).ok

        assert [e.base_version for e in client.sync.sent] == [0, 1, 2]
        assert engine.state.current("counter").version == 3

    @pytest.mark.asyncio
    async def test_non_optimistic_waits_for_server(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a", optimistic=False)
        client.sync.offline = True

        result = await client.dispatch(StateEvent("counter", 1))

        assert result.reason is DispatchReason.NETWORK_ERROR_QUEUED
        assert local(client, "counter") is None
        # still chains for the next write
        assert client.versions.get("counter") == 1

    @pytest.mark.asyncio
    async def test_rejected_payload_reports_reason(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")

        result = await client.dispatch(StateEvent("blob", "x" * 5000))

        assert not result.ok
        assert result.status == 413
        assert result.reason is DispatchReason.PAYLOAD_TOO_LARGE
        assert len(engine.state) == 0


class TestConflicts:
    """Test version conflict handling."""

    @pytest.mark.asyncio
    async def test_concurrent_writers_server_wins(self, engine: ApplyEngine):
        """The second writer on a stale base adopts the server value."""
        a = make_orchestrator(engine, "a")
        b = make_orchestrator(engine, "b")

        assert (await a.dispatch(StateEvent("counter", 1))).ok
        result = await b.dispatch(StateEvent("counter", 5))

        assert not result.ok
        assert result.status == 409
        assert result.reason is DispatchReason.CONFLICT
        assert result.body["current"] == {"state": 1, "version": 1}
        assert local(b, "counter") == 1
        assert b.versions.get("counter") == 1
        assert engine.state.current("counter").state == 1

    @pytest.mark.asyncio
    async def test_resolver_retries_with_server_base(self, engine: ApplyEngine):
        a = make_orchestrator(engine, "a")
        b = make_orchestrator(engine, "b", resolver=lambda mine, theirs, key: max(mine, theirs))

        await a.dispatch(StateEvent("counter", 1))
        result = await b.dispatch(StateEvent("counter", 5))

        assert result.ok
        assert engine.state.current("counter").version == 2
        assert engine.state.current("counter").state == 5
        assert [e.base_version for e in b.sync.sent] == [0, 1]
        assert local(b, "counter") == 5
        assert b.versions.get("counter") == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, universe: Universe):
        transport = AlwaysConflicting("theirs", 9)
        client = DispatchOrchestrator(universe, VersionTable(), "a", sync=transport, resolver=client_wins)

        result = await client.dispatch(StateEvent("k", "mine"))

        assert result.reason is DispatchReason.CONFLICT
        assert len(transport.attempts) == 1 + client.max_conflict_retries
        assert all(e.base_version == 9 for e in transport.attempts[1:])
        assert universe.get_store("k").get() == "theirs"
        assert client.versions.get("k") == 9

    @pytest.mark.asyncio
    async def test_conflict_without_current_record(self, universe: Universe):
        class BareConflict(AlwaysConflicting):
            async def publish(self, event):
                return SyncResponse(409, {"ok": False})

        client = DispatchOrchestrator(universe, VersionTable(), "a", sync=BareConflict(None, 0))
        result = await client.dispatch(StateEvent("k", 1))

        assert result.reason is DispatchReason.CONFLICT
        assert result.status == 409

    @pytest.mark.asyncio
    async def test_resolved_retry_relayed_to_peers(self, engine: ApplyEngine):
        a = make_orchestrator(engine, "a")
        peers = RecordingBroadcast()
        b = make_orchestrator(engine, "b", resolver=merge, broadcast=peers)

        await a.dispatch(StateEvent("doc", {"x": 1}))
        result = await b.dispatch(StateEvent("doc", {"y": 2}))

        assert result.ok
        assert [e.state for e in peers.published] == [{"y": 2}, {"x": 1, "y": 2}]
        assert peers.published[1].base_version == 1
        assert engine.state.current("doc").state == {"x": 1, "y": 2}


class TestOfflineQueue:
    """Test queueing while offline and flushing on reconnect."""

    @pytest.mark.asyncio
    async def test_offline_writes_flush_in_order(self, engine: ApplyEngine):
        connectivity = Connectivity(online=False)
        client = make_orchestrator(engine, "a", connectivity=connectivity)
        client.start()

        for key in ("a", "b", "c"):
            result = await client.dispatch(StateEvent(key, key.upper()))
            assert result.reason is DispatchReason.OFFLINE_QUEUED
            assert result.status == 0
            assert result.queued

        assert client.sync.attempts == []
        assert local(client, "b") == "B"

        connectivity.set_online(True)
        await client.wait_flushed()

        assert client.sync.sent_keys == ["a", "b", "c"]
        assert len(client.queue) == 0
        await client.stop()

    @pytest.mark.asyncio
    async def test_writes_to_one_key_coalesce(self, engine: ApplyEngine):
        """Several offline writes to one key become a single request."""
        connectivity = Connectivity(online=False)
        client = make_orchestrator(engine, "a", connectivity=connectivity)

        for value in (1, 2, 3):
            await client.dispatch(StateEvent("counter", value))

        connectivity.set_online(True)
        assert await client.flush() == 1

        assert len(client.sync.sent) == 1
        sent = client.sync.sent[0]
        assert (sent.state, sent.base_version) == (3, 0)
        assert client.versions.get("counter") == 1

        # next write builds on the server version
        assert (await client.dispatch(StateEvent("counter", 4))).ok
        assert client.sync.sent[-1].base_version == 1

    @pytest.mark.asyncio
    async def test_network_error_queues(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")
        client.sync.offline = True

        result = await client.dispatch(StateEvent("k", 1))

        assert not result.ok
        assert result.status == 500
        assert result.reason is DispatchReason.NETWORK_ERROR_QUEUED
        assert client.queue.has("k")

        client.sync.offline = False
        assert await client.flush() == 1
        assert engine.state.current("k").state == 1

    @pytest.mark.asyncio
    async def test_online_write_waits_behind_queued_write(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")
        client.sync.offline = True
        assert (await client.dispatch(StateEvent("k", 1))).reason is DispatchReason.NETWORK_ERROR_QUEUED

        client.sync.offline = False
        result = await client.dispatch(StateEvent("k", 2))
        assert result.queued
        await client.wait_flushed()

        assert [e.state for e in client.sync.sent] == [2]
        assert engine.state.current("k").state == 2
        assert engine.state.current("k").version == 1
        assert client.versions.get("k") == 1
        assert not client.queue

    @pytest.mark.asyncio
    async def test_online_write_waits_behind_flushing_write(self, engine: ApplyEngine):
        connectivity = Connectivity(online=False)
        transport = HeldSyncTransport(InMemorySyncTransport(engine))
        client = make_orchestrator(engine, "a", sync=transport, connectivity=connectivity)
        await client.dispatch(StateEvent("k", 1))

        connectivity.set_online(True)
        client.schedule_flush()
        await transport.held.wait()

        result = await client.dispatch(StateEvent("k", 2))
        assert result.reason is DispatchReason.OFFLINE_QUEUED

        transport.release.set()
        await client.wait_flushed()

        assert [(e.state, e.base_version) for e in transport.sent] == [(1, 0), (2, 1)]
        assert engine.state.current("k").state == 2
        assert engine.state.current("k").version == 2
        assert client.versions.get("k") == 2
        assert not client.queue

    @pytest.mark.asyncio
    async def test_flush_stops_at_network_error(self, engine: ApplyEngine):
        connectivity = Connectivity(online=False)
        client = make_orchestrator(engine, "a", connectivity=connectivity)
        for key in ("a", "b", "c"):
            await client.dispatch(StateEvent(key, 1))

        connectivity.set_online(True)
        client.sync.fail_after = 1
        delivered = await client.flush()

        assert delivered == 1
        assert client.sync.sent_keys == ["a"]
        assert [e.store_key for e in client.queue] == ["b", "c"]
        assert not client.is_flushing

    @pytest.mark.asyncio
    async def test_rejected_entry_is_dropped(self, engine: ApplyEngine):
        connectivity = Connectivity(online=False)
        client = make_orchestrator(engine, "a", connectivity=connectivity)
        await client.dispatch(StateEvent("blob", "x" * 5000))
        await client.dispatch(StateEvent("small", 1))

        connectivity.set_online(True)
        await client.flush()

        assert not client.queue
        assert engine.state.get_record("blob") is None
        assert engine.state.current("small").state == 1

    @pytest.mark.asyncio
    async def test_flush_guards(self, engine: ApplyEngine):
        connectivity = Connectivity(online=False)
        client = make_orchestrator(engine, "a", connectivity=connectivity)

        assert await client.flush() == 0
        assert client.schedule_flush() is None

        await client.dispatch(StateEvent("k", 1))
        assert await client.flush() == 0
        assert len(client.queue) == 1


class TestIncomingAndLocal:
    """Test the incoming branch and local-only mode."""

    @pytest.mark.asyncio
    async def test_incoming_event_applied_not_sent(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")

        result = await client.dispatch(StateEvent("k", "remote", version=3, origin="b"))

        assert result.ok
        assert local(client, "k") == "remote"
        assert client.versions.get("k") == 3
        assert client.sync.attempts == []

    @pytest.mark.asyncio
    async def test_own_echo_via_stream_ignored(self, engine: ApplyEngine):
        client = make_orchestrator(engine, "a")
        client.universe.get_store("k", lambda: "mine")

        result = await client.dispatch(StateEvent("k", "echo", version=1, origin="a", via=Via.SSE))

        assert result.ok
        assert local(client, "k") == "mine"
        assert client.sync.attempts == []

    @pytest.mark.asyncio
    async def test_local_only_mode(self, universe: Universe):
        client = DispatchOrchestrator(universe, VersionTable(), "solo")

        result = await client.dispatch(StateEvent("theme", "dark"))

        assert result.ok
        assert result.status == 200
        assert universe.get_store("theme").get() == "dark"
        assert client.versions.get("theme") == 1
