"""
Client side of the realtime stream.

The channel keeps one stream open, resuming from the last seen event id
after a drop, and feeds snapshots and state events into the local universe.

State machine::

    IDLE -> CONNECTING -> OPEN -> (lost) -> CLOSED -> (backoff) -> CONNECTING
                 \\-> (connect failed) -> CLOSED -> (backoff) -> CONNECTING

``stop()`` moves the channel to STOPPED from any state.
"""

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, List, Optional

from ..core.universe import Universe
from ..events import StateEvent, Via
from ..transport.base import ConnectionState, RealtimeConnection, RealtimeTransport, StreamMessage
from ..utils.errors import NetworkError, ValidationError
from ..utils.logging import get_logger
from .apply import apply_incoming_event, apply_snapshot
from .versions import VersionTable

logger = get_logger("zuno.sync.realtime")

EventHandler = Callable[[StateEvent], Any]


class Backoff:
    """Exponential reconnect delay: initial, doubling per attempt, capped."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0):
        self.initial = initial
        self.maximum = maximum
        self.attempts = 0

    def next_delay(self) -> float:
        delay = min(self.initial * (2 ** self.attempts), self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class RealtimeChannel:
    """
    Maintains the realtime stream for one client.

    Args:
        transport: Opens the underlying streams
        universe: Receives applied states
        versions: Version table guarding stale events
        client_id: Local actor id; events from it are never applied
        on_event: Optional handler for each decoded state event. When given
            it replaces the built-in apply; coroutine results are awaited so
            events stay in stream order.
        on_open: Called each time a stream opens
        on_close: Called each time a stream is lost
        backoff: Reconnect delay policy
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        universe: Universe,
        versions: VersionTable,
        client_id: str,
        on_event: Optional[EventHandler] = None,
        on_open: Optional[Callable[[], Any]] = None,
        on_close: Optional[Callable[[], Any]] = None,
        backoff: Optional[Backoff] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.universe = universe
        self.versions = versions
        self.client_id = client_id
        self.on_event = on_event
        self.on_open = on_open
        self.on_close = on_close
        self.backoff = backoff or Backoff()
        self._sleep = sleep

        self.state = ConnectionState.IDLE
        self.last_event_id = 0
        self.reconnect_delays: List[float] = []
        self._connection: Optional[RealtimeConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._opened = asyncio.Event()

    def start(self) -> None:
        """Start the connection loop in the background."""
        if self._task is not None and not self._task.done():
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run())

    async def wait_open(self, timeout: Optional[float] = None) -> None:
        """Wait until a stream is open."""
        await asyncio.wait_for(self._opened.wait(), timeout)

    async def stop(self) -> None:
        """Close the stream and stop reconnecting."""
        self._stopped = True
        self.state = ConnectionState.STOPPED

        if self._connection is not None:
            await self._connection.close()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("realtime_stopped", last_event_id=self.last_event_id)

    async def _run(self) -> None:
        try:
            while not self._stopped:
                try:
                    await self._connect_once()
                except Exception as e:
                    logger.error("realtime_connection_failed", error=str(e), exc_info=True)
                if self._stopped:
                    break
                self.state = ConnectionState.CLOSED
                self._opened.clear()
                if self.on_close is not None:
                    self.on_close()

                delay = self.backoff.next_delay()
                self.reconnect_delays.append(delay)
                logger.info("realtime_reconnect_scheduled", delay=delay, attempt=self.backoff.attempts)
                await self._sleep(delay)
        except asyncio.CancelledError:
            logger.debug("realtime_loop_cancelled")
            raise

    async def _connect_once(self) -> None:
        self.state = ConnectionState.CONNECTING
        logger.debug("realtime_connecting", last_event_id=self.last_event_id)

        try:
            connection = await self.transport.connect(self.last_event_id)
        except NetworkError as e:
            logger.warning("realtime_connect_failed", error=str(e))
            return

        self._connection = connection
        self.state = ConnectionState.OPEN
        self.backoff.reset()
        self._opened.set()
        logger.info("realtime_open", last_event_id=self.last_event_id)
        if self.on_open is not None:
            self.on_open()

        try:
            async for message in connection.messages():
                await self.handle_message(message)
            logger.info("realtime_stream_ended")
        except NetworkError as e:
            logger.warning("realtime_connection_lost", error=str(e), last_event_id=self.last_event_id)
        finally:
            self._connection = None
            await connection.close()

    async def handle_message(self, message: StreamMessage) -> None:
        """Process one decoded stream message."""
        try:
            data = json.loads(message.data)
        except json.JSONDecodeError as e:
            logger.warning("realtime_invalid_payload", kind=message.event, error=str(e))
            return

        if message.event == "snapshot":
            if not isinstance(data, dict):
                logger.warning("realtime_invalid_snapshot", payload_type=type(data).__name__)
                return
            try:
                count = apply_snapshot(self.universe, self.versions, data)
            except ValidationError as e:
                logger.warning("realtime_invalid_snapshot", error=str(e))
                return
            # the snapshot's id is the server's cursor, even if lower than ours
            self.last_event_id = message.event_id or 0
            logger.info("realtime_snapshot_applied", keys=count, last_event_id=self.last_event_id)
            return

        if message.event not in ("state", "message"):
            logger.debug("realtime_unknown_message", kind=message.event)
            return

        try:
            event = StateEvent.from_dict(data)
        except ValidationError as e:
            logger.warning("realtime_invalid_event", error=str(e))
            return

        self._track(message.event_id if message.event_id is not None else event.event_id)
        event = event.evolve(via=Via.SSE)

        if event.origin == self.client_id:
            logger.debug("realtime_echo_skipped", store_key=event.store_key, event_id=event.event_id)
            return

        if self.on_event is None:
            apply_incoming_event(self.universe, self.versions, event, self.client_id)
            return

        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("realtime_event_handler_failed", store_key=event.store_key, error=str(e), exc_info=True)

    def _track(self, event_id: Optional[int]) -> None:
        if event_id is not None and event_id > self.last_event_id:
            self.last_event_id = event_id

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN


__all__ = ['RealtimeChannel', 'Backoff']
