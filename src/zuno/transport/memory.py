"""
In-memory transports.

These connect a client engine directly to an ApplyEngine in the same
process, and let several clients in one process act as peers on a named
channel. Payloads still pass through the JSON wire format and the stream
framing so behaviour matches the network transports.
"""

import asyncio
import copy
import json
from typing import Any, AsyncIterator, Dict, List, Set

from ..events import StateEvent, SyncResponse
from ..server.engine import ApplyEngine
from ..server.stream import StreamSubscription
from ..utils.errors import ConnectionError, TransportError
from ..utils.logging import get_logger
from .base import PeerChannel, PeerListener, RealtimeConnection, RealtimeTransport, StreamMessage, SyncTransport
from .sse import SSEDecoder

logger = get_logger("zuno.transport.memory")


class InMemorySyncTransport(SyncTransport):
    """Sends writes straight into an engine's sync handler."""

    def __init__(self, engine: ApplyEngine):
        self.engine = engine
        self.available = True

    async def publish(self, event: StateEvent) -> SyncResponse:
        if not self.available:
            raise ConnectionError("Sync endpoint unreachable")
        return self.engine.handle_sync(json.dumps(event.to_dict()))

    async def fetch_snapshot(self) -> Dict[str, Any]:
        if not self.available:
            raise ConnectionError("Snapshot endpoint unreachable")
        return json.loads(json.dumps(self.engine.snapshot()))


class InMemoryConnection(RealtimeConnection):
    """A stream subscription decoded back into stream messages."""

    def __init__(self, subscription: StreamSubscription):
        self._subscription = subscription
        self._decoder = SSEDecoder()
        self._dropped = False

    async def messages(self) -> AsyncIterator[StreamMessage]:
        try:
            async for frame in self._subscription:
                for message in self._decoder.feed(frame):
                    yield message
        finally:
            self._subscription.close()

        if self._dropped:
            raise ConnectionError("Realtime connection dropped")

    def drop(self) -> None:
        """Simulate a lost connection."""
        self._dropped = True
        self._subscription.close()

    async def close(self) -> None:
        self._subscription.close()


class InMemoryRealtimeTransport(RealtimeTransport):
    """Opens realtime streams directly on an engine."""

    def __init__(self, engine: ApplyEngine):
        self.engine = engine
        self.available = True
        self.connections: List[InMemoryConnection] = []
        self.connect_attempts: List[int] = []

    async def connect(self, last_event_id: int = 0) -> RealtimeConnection:
        self.connect_attempts.append(last_event_id)
        if not self.available:
            raise ConnectionError("Realtime endpoint unreachable")
        connection = InMemoryConnection(self.engine.open_stream(last_event_id))
        self.connections.append(connection)
        return connection

    def drop_all(self) -> None:
        """Drop every open connection."""
        for connection in self.connections:
            connection.drop()
        self.connections.clear()


class InMemoryPeerHub:
    """Registry of peer channels, grouped by channel name."""

    def __init__(self):
        self._channels: Dict[str, Set["InMemoryPeerChannel"]] = {}

    def channel(self, name: str) -> "InMemoryPeerChannel":
        return InMemoryPeerChannel(name, self)

    def _join(self, channel: "InMemoryPeerChannel") -> None:
        self._channels.setdefault(channel.name, set()).add(channel)

    def _leave(self, channel: "InMemoryPeerChannel") -> None:
        members = self._channels.get(channel.name)
        if members is not None:
            members.discard(channel)
            if not members:
                del self._channels[channel.name]

    def members(self, name: str) -> int:
        return len(self._channels.get(name, ()))

    def _deliver(self, sender: "InMemoryPeerChannel", message: Dict[str, Any]) -> None:
        for member in list(self._channels.get(sender.name, ())):
            if member is not sender:
                member._receive(copy.deepcopy(message))


class InMemoryPeerChannel(PeerChannel):
    """
    Peer channel backed by an InMemoryPeerHub.

    Messages are deep-copied per receiver and delivered on a later loop
    iteration, like a browser BroadcastChannel.
    """

    def __init__(self, name: str, hub: InMemoryPeerHub):
        super().__init__(name)
        self.hub = hub
        self._listeners: Dict[PeerListener, None] = {}
        self._closed = False
        hub._join(self)

    def post(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise TransportError(f"Peer channel '{self.name}' is closed")
        asyncio.get_running_loop().call_soon(self.hub._deliver, self, message)

    def _receive(self, message: Dict[str, Any]) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error("peer_listener_failed", channel=self.name, error=str(e), exc_info=True)

    def add_listener(self, listener: PeerListener) -> None:
        self._listeners[listener] = None

    def remove_listener(self, listener: PeerListener) -> None:
        self._listeners.pop(listener, None)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self.hub._leave(self)

    @property
    def closed(self) -> bool:
        return self._closed


__all__ = [
    'InMemorySyncTransport',
    'InMemoryConnection',
    'InMemoryRealtimeTransport',
    'InMemoryPeerHub',
    'InMemoryPeerChannel',
]
