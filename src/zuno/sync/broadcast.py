"""
Cross-tab broadcast protocol.

Peers sharing a channel exchange three kinds of message::

    {"type": "hello", "origin": <id>}
    {"type": "snapshot", "origin": <id>, "target": <id>, "snapshot": {key: {state, version}}}
    {"type": "event", "origin": <id>, "event": <StateEvent wire dict>}

A new peer says hello one loop iteration after start; every peer that hears
it answers with a snapshot addressed to that peer only. Local writes are
relayed as ``event`` messages.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, Optional, Set

from ..core.universe import Universe
from ..events import StateEvent, Via
from ..transport.base import PeerChannel
from ..utils.errors import ValidationError
from ..utils.logging import get_logger
from .apply import apply_incoming_event, apply_snapshot
from .versions import VersionTable

logger = get_logger("zuno.sync.broadcast")

HELLO = "hello"
SNAPSHOT = "snapshot"
EVENT = "event"


class CrossTabBroadcast:
    """
    One peer's end of the broadcast protocol.

    ``ready`` is set when a snapshot addressed to this peer arrives, or, when
    ``bootstrap_timeout`` is given, once that many seconds pass without one.
    Without a timeout nothing waits on it: local state is usable at once.
    """

    def __init__(
        self,
        channel: PeerChannel,
        universe: Universe,
        versions: VersionTable,
        client_id: str,
        on_event: Optional[Callable[[StateEvent], Any]] = None,
        bootstrap_timeout: Optional[float] = None,
    ):
        self.channel = channel
        self.universe = universe
        self.versions = versions
        self.client_id = client_id
        self.on_event = on_event
        self.bootstrap_timeout = bootstrap_timeout
        self.ready = asyncio.Event()
        self.bootstrapped = False
        self._started = False
        self._handles: list = []
        self._pending: Set[asyncio.Future] = set()

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.channel.add_listener(self._on_message)

        loop = asyncio.get_running_loop()
        self._handles.append(loop.call_soon(self.hello))
        if self.bootstrap_timeout is not None:
            self._handles.append(loop.call_later(self.bootstrap_timeout, self._assume_first))

    def hello(self) -> None:
        self._post({"type": HELLO, "origin": self.client_id})
        logger.debug("broadcast_hello_sent", channel=self.channel.name, origin=self.client_id)

    def publish(self, event: StateEvent) -> None:
        """Relay a local write to the other peers."""
        event = event.evolve(origin=self.client_id, via=Via.BROADCAST)
        self._post({"type": EVENT, "origin": self.client_id, "event": event.to_dict()})

    def local_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            key: {"state": state, "version": self.versions.get(key)}
            for key, state in self.universe.snapshot().items()
        }

    def _post(self, message: Dict[str, Any]) -> None:
        if not self._started:
            return
        self.channel.post(message)

    def _on_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning("broadcast_invalid_message", payload_type=type(message).__name__)
            return

        origin = message.get("origin")
        if origin is not None and origin == self.client_id:
            return

        kind = message.get("type")
        if kind == HELLO:
            self._answer_hello(origin)
        elif kind == SNAPSHOT:
            self._receive_snapshot(message)
        elif kind == EVENT:
            self._receive_event(message)
        else:
            logger.debug("broadcast_unknown_message", kind=kind)

    def _answer_hello(self, origin: Optional[str]) -> None:
        if not origin:
            return
        snapshot = self.local_snapshot()
        self._post({
            "type": SNAPSHOT,
            "origin": self.client_id,
            "target": origin,
            "snapshot": snapshot,
        })
        logger.debug("broadcast_snapshot_sent", target=origin, keys=len(snapshot))

    def _receive_snapshot(self, message: Dict[str, Any]) -> None:
        if message.get("target") != self.client_id:
            return
        snapshot = message.get("snapshot")
        if not isinstance(snapshot, dict):
            logger.warning("broadcast_invalid_snapshot", origin=message.get("origin"))
            return

        try:
            count = apply_snapshot(self.universe, self.versions, snapshot, only_newer=True)
        except ValidationError as e:
            logger.warning("broadcast_invalid_snapshot", origin=message.get("origin"), error=str(e))
            return
        self.bootstrapped = True
        self.ready.set()
        logger.info("broadcast_snapshot_applied", origin=message.get("origin"), keys=count)

    def _receive_event(self, message: Dict[str, Any]) -> None:
        try:
            event = StateEvent.from_dict(message.get("event")).evolve(via=Via.BROADCAST)
        except ValidationError as e:
            logger.warning("broadcast_invalid_event", error=str(e))
            return

        if event.origin == self.client_id:
            return

        if self.on_event is None:
            apply_incoming_event(self.universe, self.versions, event, self.client_id)
            return

        result = self.on_event(event)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._event_done)

    def _event_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("broadcast_event_handler_failed", error=str(task.exception()))

    def _assume_first(self) -> None:
        if not self.ready.is_set():
            logger.info("broadcast_bootstrap_timeout", timeout=self.bootstrap_timeout)
            self.ready.set()

    async def drain(self) -> None:
        """Wait for dispatched peer events to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        self.channel.remove_listener(self._on_message)
        self.channel.close()
        logger.debug("broadcast_stopped", channel=self.channel.name)


__all__ = ['CrossTabBroadcast', 'HELLO', 'SNAPSHOT', 'EVENT']
