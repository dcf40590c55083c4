"""
Zuno - versioned state synchronization.

Keeps named stores consistent between a server and many clients with
optimistic concurrency, a resumable realtime stream, peer relays and an
offline write queue.
"""

__version__ = "0.1.0"

from .client import BoundStore, Zuno, create_zuno
from .core import Store, Universe, to_readable
from .events import DispatchReason, DispatchResult, StateEvent, UniverseRecord, Via
from .server import ApplyEngine, EventLog
from .utils.errors import ZunoError

__all__ = [
    '__version__',
    'Zuno',
    'BoundStore',
    'create_zuno',
    'Store',
    'Universe',
    'to_readable',
    'StateEvent',
    'UniverseRecord',
    'Via',
    'DispatchReason',
    'DispatchResult',
    'ApplyEngine',
    'EventLog',
    'ZunoError',
]
