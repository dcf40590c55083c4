"""
Authoritative server side of Zuno.

This package provides the apply pipeline (version check, event log, state
storage, fan-out) and the handlers that HTTP adapters map onto routes.
"""

from .bus import StateBus
from .engine import ApplyEngine, parse_last_event_id
from .log import EventLog
from .state import UniverseState
from .stream import StreamSubscription

__all__ = [
    'ApplyEngine',
    'EventLog',
    'StateBus',
    'UniverseState',
    'StreamSubscription',
    'parse_last_event_id',
]
