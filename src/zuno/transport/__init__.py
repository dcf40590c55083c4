"""Transport layer for Zuno: realtime streams, sync writes and peer channels."""

from .base import (
    ConnectionState,
    PeerChannel,
    RealtimeConnection,
    RealtimeTransport,
    StreamMessage,
    SyncTransport,
)
from .http import HttpSyncTransport
from .memory import (
    InMemoryPeerChannel,
    InMemoryPeerHub,
    InMemoryRealtimeTransport,
    InMemorySyncTransport,
)
from .sse import SSEDecoder, SSETransport

__all__ = [
    'ConnectionState',
    'StreamMessage',
    'RealtimeConnection',
    'RealtimeTransport',
    'SyncTransport',
    'PeerChannel',
    'SSEDecoder',
    'SSETransport',
    'HttpSyncTransport',
    'InMemorySyncTransport',
    'InMemoryRealtimeTransport',
    'InMemoryPeerHub',
    'InMemoryPeerChannel',
]
