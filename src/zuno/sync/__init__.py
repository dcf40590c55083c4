"""Client-side synchronization: dispatch, realtime stream, peers and offline queue."""

from .apply import apply_incoming_event, apply_snapshot
from .broadcast import CrossTabBroadcast
from .conflict import ConflictResolutionStrategy, ConflictResolver, resolver_for, server_wins
from .connectivity import Connectivity
from .middleware import (
    FunctionMiddleware,
    LoggingMiddleware,
    Middleware,
    MiddlewareAPI,
    MiddlewarePipeline,
)
from .orchestrator import DispatchOrchestrator
from .queue import OfflineQueue, coalesce
from .realtime import Backoff, RealtimeChannel
from .versions import VersionTable

__all__ = [
    'apply_incoming_event',
    'apply_snapshot',
    'CrossTabBroadcast',
    'ConflictResolutionStrategy',
    'ConflictResolver',
    'resolver_for',
    'server_wins',
    'Connectivity',
    'Middleware',
    'MiddlewareAPI',
    'MiddlewarePipeline',
    'FunctionMiddleware',
    'LoggingMiddleware',
    'DispatchOrchestrator',
    'OfflineQueue',
    'coalesce',
    'Backoff',
    'RealtimeChannel',
    'VersionTable',
]
