"""Observable value cell and the readable adapter contract."""

from typing import Any, Callable, Dict, Generic, Optional, Protocol, TypeVar

T = TypeVar('T')

Listener = Callable[[T], None]
Unsubscribe = Callable[[], bool]


def same_value(a: Any, b: Any) -> bool:
    """Identity, or equality between values of the same type."""
    if a is b:
        return True
    return type(a) is type(b) and a == b


class Store(Generic[T]):
    """A single observable state cell."""

    def __init__(self, initial: T):
        self._state = initial
        self._listeners: Dict[Listener, None] = {}

    def get(self) -> T:
        return self._state

    def set(self, next_value: Any) -> bool:
        """
        Update the state.

        If ``next_value`` is callable it is invoked with the current state to
        derive the new one. Listeners are notified synchronously, and only if
        the state actually changed.

        Returns:
            True if the state changed
        """
        value = next_value(self._state) if callable(next_value) else next_value

        if same_value(value, self._state):
            return False

        self._state = value
        for listener in list(self._listeners):
            listener(value)
        return True

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """Register a listener; returns a closure that removes it."""
        self._listeners[listener] = None

        def unsubscribe() -> bool:
            return self._listeners.pop(listener, False) is None

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"Store(state={self._state!r}, listeners={len(self._listeners)})"


class Readable(Protocol[T]):
    """Contract a UI binding uses to observe a store."""

    def get_snapshot(self) -> T: ...

    def subscribe(self, on_change: Callable[[], None]) -> Callable[[], Any]: ...


class StoreReadable(Generic[T]):
    """Adapts a store to the readable contract."""

    def __init__(self, store: Store[T], server_snapshot: Optional[Callable[[], T]] = None):
        self._store = store
        self._server_snapshot = server_snapshot

    def get_snapshot(self) -> T:
        return self._store.get()

    def get_server_snapshot(self) -> T:
        if self._server_snapshot is None:
            return self._store.get()
        return self._server_snapshot()

    def subscribe(self, on_change: Callable[[], None]) -> Unsubscribe:
        return self._store.subscribe(lambda _state: on_change())


def to_readable(store: Store[T], server_snapshot: Optional[Callable[[], T]] = None) -> StoreReadable[T]:
    """Convert a store into a readable for view-layer bindings."""
    return StoreReadable(store, server_snapshot)


__all__ = ['Store', 'Readable', 'StoreReadable', 'to_readable', 'same_value']
