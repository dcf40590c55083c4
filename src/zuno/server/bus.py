"""In-process fan-out of accepted state events."""

from typing import Callable, Dict

from ..events import StateEvent
from ..utils.logging import get_logger

logger = get_logger("zuno.server.bus")

StateListener = Callable[[StateEvent], None]


class StateBus:
    """
    Delivers every published event to the current subscribers.

    Delivery is synchronous and in subscription order. A failing listener is
    logged and skipped so one broken stream cannot stall the others.
    """

    def __init__(self):
        self._listeners: Dict[StateListener, None] = {}

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; returns a closure that removes it."""
        self._listeners[listener] = None
        logger.debug("bus_subscribed", subscribers=len(self._listeners))

        def unsubscribe() -> None:
            if self._listeners.pop(listener, False) is None:
                logger.debug("bus_unsubscribed", subscribers=len(self._listeners))

        return unsubscribe

    def publish(self, event: StateEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "bus_listener_failed",
                    store_key=event.store_key,
                    event_id=event.event_id,
                    error=str(e),
                    exc_info=True,
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)


__all__ = ['StateBus', 'StateListener']
