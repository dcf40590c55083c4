"""
Realtime stream framing and per-client stream subscriptions.

Frames follow the server-sent events text format:

    event: snapshot
    data: {"counter": {"state": 1, "version": 1}}

    id: 7
    event: state
    data: {"storeKey": "counter", ...}

    : ping 1700000000000
"""

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable, List, Optional

from ..events import StateEvent
from ..utils.logging import get_logger

logger = get_logger("zuno.server.stream")


def format_event(event: str, data: Any, event_id: Optional[int] = None) -> str:
    """Render one named stream message."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    payload = json.dumps(data, separators=(",", ":"))
    for chunk in payload.splitlines() or [""]:
        lines.append(f"data: {chunk}")
    return "\n".join(lines) + "\n\n"


def format_state(event: StateEvent) -> str:
    return format_event("state", event.to_dict(), event_id=event.event_id)


def format_comment(text: str) -> str:
    return f": {text}\n\n"


class StreamSubscription:
    """
    One client's view of the realtime stream.

    Yields the initial frames (snapshot or replay) followed by live events
    from the state bus, interleaved with heartbeat comments while idle.
    Live events whose id was already sent during replay are skipped.
    """

    def __init__(
        self,
        initial_frames: List[str],
        subscribe: Callable[[Callable[[StateEvent], None]], Callable[[], None]],
        heartbeat_interval: float = 15.0,
        last_sent_id: int = 0,
    ):
        self._initial = list(initial_frames)
        self._queue: "asyncio.Queue[Optional[StateEvent]]" = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self.heartbeat_interval = heartbeat_interval
        self._last_sent_id = last_sent_id
        self._closed = False
        self._unsubscribe = subscribe(self._on_event)

    def _on_event(self, event: Optional[StateEvent]) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def frames(self) -> AsyncIterator[str]:
        for frame in self._initial:
            yield frame
        self._initial.clear()

        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                yield format_comment(f"ping {int(time.time() * 1000)}")
                continue

            if event is None:
                break
            if event.event_id is not None and event.event_id <= self._last_sent_id:
                continue
            if event.event_id is not None:
                self._last_sent_id = event.event_id
            yield format_state(event)

    def __aiter__(self) -> AsyncIterator[str]:
        return self.frames()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._on_event(None)
        logger.debug("stream_closed", last_sent_id=self._last_sent_id)

    @property
    def closed(self) -> bool:
        return self._closed


__all__ = [
    'format_event',
    'format_state',
    'format_comment',
    'StreamSubscription',
]
