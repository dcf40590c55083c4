"""
Tests for the cross-tab broadcast protocol.
"""

import asyncio

import pytest

from zuno.core.universe import Universe
from zuno.events import StateEvent, Via
from zuno.server.engine import ApplyEngine
from zuno.sync.broadcast import CrossTabBroadcast
from zuno.sync.versions import VersionTable
from zuno.transport.memory import InMemoryPeerHub
from tests.utils.async_helpers import settle, wait_for_condition


CHANNEL = "zuno-test"


def make_peer(hub: InMemoryPeerHub, client_id: str, **kwargs) -> CrossTabBroadcast:
    return CrossTabBroadcast(hub.channel(CHANNEL), Universe(), VersionTable(), client_id, **kwargs)


class TestBroadcastProtocol:
    """Test the hello/snapshot/event exchange between raw peers."""

    @pytest.mark.asyncio
    async def test_hello_answered_with_targeted_snapshot(self, peer_hub: InMemoryPeerHub):
        first = make_peer(peer_hub, "first")
        first.universe.get_store("theme", lambda: "dark")
        first.versions.observe("theme", 2)
        first.start()
        await settle()

        seen = []
        bystander = peer_hub.channel(CHANNEL)
        bystander.add_listener(seen.append)

        second = make_peer(peer_hub, "second")
        second.start()
        await asyncio.wait_for(second.ready.wait(), timeout=1)

        assert second.bootstrapped
        assert second.universe.snapshot() == {"theme": "dark"}
        assert second.versions.get("theme") == 2

        snapshots = [m for m in seen if m["type"] == "snapshot"]
        assert snapshots and all(m["target"] == "second" for m in snapshots)
        assert not first.bootstrapped

        first.stop()
        second.stop()
        bystander.close()

    @pytest.mark.asyncio
    async def test_snapshot_for_another_peer_ignored(self, peer_hub: InMemoryPeerHub):
        peer = make_peer(peer_hub, "me")
        peer.start()
        other = peer_hub.channel(CHANNEL)

        other.post({
            "type": "snapshot",
            "origin": "x",
            "target": "someone-else",
            "snapshot": {"k": {"state": 1, "version": 1}},
        })
        await settle()

        assert len(peer.universe) == 0
        assert not peer.ready.is_set()
        peer.stop()
        other.close()

    @pytest.mark.asyncio
    async def test_snapshot_with_bad_version_ignored(self, peer_hub: InMemoryPeerHub):
        peer = make_peer(peer_hub, "me")
        peer.start()
        other = peer_hub.channel(CHANNEL)

        other.post({
            "type": "snapshot",
            "origin": "x",
            "target": "me",
            "snapshot": {"a": {"state": 1, "version": 1}, "k": {"state": 1, "version": "one"}},
        })
        await settle()

        assert len(peer.universe) == 0
        assert not peer.bootstrapped
        assert not peer.ready.is_set()
        peer.stop()
        other.close()

    @pytest.mark.asyncio
    async def test_snapshot_keeps_newer_local_state(self, peer_hub: InMemoryPeerHub):
        peer = make_peer(peer_hub, "me")
        peer.universe.get_store("k", lambda: "mine")
        peer.versions.observe("k", 5)
        peer.start()
        other = peer_hub.channel(CHANNEL)

        other.post({
            "type": "snapshot",
            "origin": "x",
            "target": "me",
            "snapshot": {"k": {"state": "older", "version": 3}, "j": {"state": "new", "version": 1}},
        })
        await asyncio.wait_for(peer.ready.wait(), timeout=1)

        assert peer.universe.snapshot() == {"k": "mine", "j": "new"}
        assert peer.versions.get("k") == 5
        peer.stop()
        other.close()

    @pytest.mark.asyncio
    async def test_event_applied_without_handler(self, peer_hub: InMemoryPeerHub):
        sender = make_peer(peer_hub, "sender")
        receiver = make_peer(peer_hub, "receiver")
        sender.start()
        receiver.start()

        sender.publish(StateEvent("theme", "dark", version=1))

        assert await wait_for_condition(lambda: receiver.universe.snapshot().get("theme") == "dark")
        assert receiver.versions.get("theme") == 1
        sender.stop()
        receiver.stop()

    @pytest.mark.asyncio
    async def test_event_handler_receives_broadcast_events(self, peer_hub: InMemoryPeerHub):
        received = []

        async def on_event(event):
            received.append(event)

        sender = make_peer(peer_hub, "sender")
        receiver = make_peer(peer_hub, "receiver", on_event=on_event)
        sender.start()
        receiver.start()

        sender.publish(StateEvent("k", 1))
        assert await wait_for_condition(lambda: bool(receiver._pending) or bool(received))
        await receiver.drain()

        assert len(received) == 1
        assert received[0].origin == "sender"
        assert received[0].via is Via.BROADCAST
        assert len(receiver.universe) == 0
        sender.stop()
        receiver.stop()

    @pytest.mark.asyncio
    async def test_malformed_messages_ignored(self, peer_hub: InMemoryPeerHub):
        peer = make_peer(peer_hub, "me")
        peer.start()
        other = peer_hub.channel(CHANNEL)

        other.post("not a dict")
        other.post({"type": "event", "origin": "x", "event": {"state": 1}})
        other.post({"type": "gossip", "origin": "x"})
        await settle()

        assert len(peer.universe) == 0
        peer.stop()
        other.close()

    @pytest.mark.asyncio
    async def test_bootstrap_timeout_sets_ready(self, peer_hub: InMemoryPeerHub):
        peer = make_peer(peer_hub, "alone", bootstrap_timeout=0.01)
        peer.start()

        await asyncio.wait_for(peer.ready.wait(), timeout=1)

        assert not peer.bootstrapped
        peer.stop()

    @pytest.mark.asyncio
    async def test_stop_leaves_channel(self, peer_hub: InMemoryPeerHub):
        peer = make_peer(peer_hub, "me")
        peer.start()
        assert peer_hub.members(CHANNEL) == 1

        peer.stop()
        peer.publish(StateEvent("k", 1))

        assert peer_hub.members(CHANNEL) == 0
        assert peer.channel.closed


class TestClientsOnOneChannel:
    """Test peers wired through full clients."""

    @pytest.mark.asyncio
    async def test_local_only_relay(self, make_client, engine: ApplyEngine):
        """A write in one tab shows up in another with no server involved."""
        a = await make_client("tab-a", sync=False, channel=True).start()
        b = await make_client("tab-b", sync=False, channel=True).start()

        result = await a.set("theme", "dark")

        assert result.ok
        assert await wait_for_condition(lambda: b.get("theme") == "dark")
        assert b.versions.get("theme") == 1
        assert len(engine.log) == 0

    @pytest.mark.asyncio
    async def test_synced_write_relayed_and_posted_once(self, make_client, engine: ApplyEngine):
        a = await make_client("tab-a", channel=True).start()
        b = await make_client("tab-b", channel=True).start()
        await settle()

        await a.set("theme", "light")

        assert await wait_for_condition(lambda: b.get("theme") == "light")
        assert len(engine.log) == 1
        assert engine.log.get_events_after(0)[0].origin == "tab-a"
        # relays carry no version; the server stream is the source of versions
        assert b.versions.known("theme") is None

    @pytest.mark.asyncio
    async def test_new_tab_bootstraps_from_peer(self, make_client):
        a = await make_client("tab-a", sync=False, channel=True).start()
        await a.set("counter", 3)

        b = await make_client("tab-b", sync=False, channel=True, bootstrap_timeout=1.0).start()
        await asyncio.wait_for(b.broadcast.ready.wait(), timeout=1)

        assert b.broadcast.bootstrapped
        assert b.get("counter") == 3
        assert b.versions.get("counter") == 1
