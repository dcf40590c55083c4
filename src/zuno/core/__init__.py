"""Local state containers: stores and the universe that holds them."""

from .store import Readable, Store, StoreReadable, to_readable
from .universe import Universe

__all__ = [
    'Store',
    'Readable',
    'StoreReadable',
    'to_readable',
    'Universe',
]
