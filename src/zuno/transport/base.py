"""
Transport contracts used by the client-side sync engine.

Three seams keep the engine independent of any particular network stack:

- ``RealtimeTransport`` opens resumable server-to-client event streams.
- ``SyncTransport`` delivers writes to the sync endpoint and reads snapshots.
- ``PeerChannel`` broadcasts messages among local peers (tabs, workers).

Each has an aiohttp-backed and an in-memory implementation.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

from ..events import StateEvent, SyncResponse


class ConnectionState(enum.Enum):
    """Realtime connection state."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StreamMessage:
    """One named message from a realtime stream; ``data`` is the raw payload text."""
    event: str
    data: str
    event_id: Optional[int] = None


class RealtimeConnection(ABC):
    """An open realtime stream."""

    @abstractmethod
    def messages(self) -> AsyncIterator[StreamMessage]:
        """
        Iterate over incoming messages.

        Ends when the stream is closed cleanly; raises NetworkError when the
        connection is lost.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the stream."""


class RealtimeTransport(ABC):
    """Opens realtime streams."""

    @abstractmethod
    async def connect(self, last_event_id: int = 0) -> RealtimeConnection:
        """
        Open a stream, resuming after ``last_event_id`` when it is positive.

        Raises:
            NetworkError: If the stream cannot be opened
        """

    async def close(self) -> None:
        """Release transport-wide resources."""


class SyncTransport(ABC):
    """Delivers writes to the sync endpoint."""

    @abstractmethod
    async def publish(self, event: StateEvent) -> SyncResponse:
        """
        Send one event.

        Returns the endpoint's status and JSON body for every HTTP-level
        outcome, including 409 and 4xx.

        Raises:
            NetworkError: If the request could not be delivered
        """

    @abstractmethod
    async def fetch_snapshot(self) -> Dict[str, Any]:
        """Read ``{state, lastEventId}`` from the snapshot endpoint."""

    async def close(self) -> None:
        """Release transport-wide resources."""


PeerListener = Callable[[Dict[str, Any]], None]


class PeerChannel(ABC):
    """Named broadcast channel shared by local peers. A peer never receives its own posts."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def post(self, message: Dict[str, Any]) -> None:
        """Send a message to every other peer on the channel."""

    @abstractmethod
    def add_listener(self, listener: PeerListener) -> None: ...

    @abstractmethod
    def remove_listener(self, listener: PeerListener) -> None: ...

    @abstractmethod
    def close(self) -> None:
        """Leave the channel; later posts raise TransportError."""


__all__ = [
    'ConnectionState',
    'StreamMessage',
    'RealtimeConnection',
    'RealtimeTransport',
    'SyncTransport',
    'PeerChannel',
    'PeerListener',
]
