"""Online/offline signal shared by the orchestrator and the application."""

from typing import Callable, Dict

from ..utils.logging import get_logger

logger = get_logger("zuno.sync.connectivity")

ConnectivityListener = Callable[[bool], None]


class Connectivity:
    """
    Tracks whether the network is believed to be reachable.

    Listeners are called synchronously with the new value on every change.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: Dict[ConnectivityListener, None] = {}

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            listener(online)

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners[listener] = None

        def unsubscribe() -> None:
            self._listeners.pop(listener, None)

        return unsubscribe


__all__ = ['Connectivity']
