"""
Authoritative apply pipeline and transport-independent request handlers.

The ApplyEngine is the single mutator of authoritative state. A write is
checked against the current version of its key (compare-and-swap on
``baseVersion``), versioned, appended to the event log, stored, and
published to realtime subscribers.
"""

import json
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..events import (
    Accepted,
    ApplyResult,
    DispatchReason,
    Rejected,
    StateEvent,
    SyncResponse,
    Via,
    records_to_snapshot,
)
from ..utils.config import ServerConfig
from ..utils.errors import InvalidPayloadError, PayloadTooLargeError, ValidationError
from ..utils.logging import get_logger
from .bus import StateBus
from .log import EventLog
from .state import UniverseState
from .stream import StreamSubscription, format_comment, format_event, format_state

logger = get_logger("zuno.server.engine")

LAST_EVENT_ID_HEADER = "Last-Event-ID"
LAST_EVENT_ID_PARAM = "lastEventId"


def parse_last_event_id(
    headers: Optional[Mapping[str, str]] = None,
    query: Optional[Mapping[str, str]] = None,
) -> int:
    """Resume cursor from the Last-Event-ID header or lastEventId query, else 0."""
    raw = None
    if headers:
        raw = headers.get(LAST_EVENT_ID_HEADER) or headers.get(LAST_EVENT_ID_HEADER.lower())
    if not raw and query:
        raw = query.get(LAST_EVENT_ID_PARAM)
    try:
        return max(int(raw), 0) if raw else 0
    except (TypeError, ValueError):
        return 0


class ApplyEngine:
    """Server-side synchronization core."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        log: Optional[EventLog] = None,
        bus: Optional[StateBus] = None,
        state: Optional[UniverseState] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ServerConfig()
        self.log = log or EventLog(self.config.log_capacity)
        self.bus = bus or StateBus()
        self.state = state or UniverseState()
        self._clock = clock
        self._key_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, store_key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(store_key)
            if lock is None:
                lock = self._key_locks[store_key] = threading.Lock()
            return lock

    def apply_state_event(self, incoming: StateEvent) -> ApplyResult:
        """
        Apply an incoming write.

        Writes to the same key are serialized; writes to different keys do
        not contend.

        Returns:
            Accepted with the finalized event, or Rejected with the live
            record when ``base_version`` does not match the current version
        """
        with self._lock_for(incoming.store_key):
            current = self.state.current(incoming.store_key)

            if incoming.base_version is not None and incoming.base_version != current.version:
                logger.info(
                    "event_rejected",
                    store_key=incoming.store_key,
                    base_version=incoming.base_version,
                    current_version=current.version,
                    origin=incoming.origin,
                )
                return Rejected(current=current)

            event = self.log.append(incoming.evolve(
                version=current.version + 1,
                ts=int(self._clock() * 1000),
            ))
            self.state.update(event)
            self.bus.publish(event)

        logger.debug(
            "event_accepted",
            store_key=event.store_key,
            version=event.version,
            event_id=event.event_id,
            origin=event.origin,
        )
        return Accepted(event=event)

    def parse_sync_body(self, body: Union[bytes, str]) -> StateEvent:
        """
        Decode a sync request body into an event.

        Raises:
            PayloadTooLargeError: Body exceeds ``max_body_bytes``
            InvalidPayloadError: Body is not JSON or not a valid event
        """
        raw = body.encode("utf-8") if isinstance(body, str) else body
        if len(raw) > self.config.max_body_bytes:
            raise PayloadTooLargeError(len(raw), self.config.max_body_bytes)

        try:
            data = json.loads(raw or b"{}")
            event = StateEvent.from_dict(data)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            raise InvalidPayloadError(cause=e) from e

        return event.evolve(via=Via.HTTP)

    def handle_sync(self, body: Union[bytes, str]) -> SyncResponse:
        """Sync write endpoint: body in, status and JSON body out."""
        try:
            incoming = self.parse_sync_body(body)
        except PayloadTooLargeError as e:
            logger.warning("sync_payload_too_large", size=e.size, limit=e.limit)
            return SyncResponse(413, {"ok": False, "reason": DispatchReason.PAYLOAD_TOO_LARGE.value})
        except InvalidPayloadError as e:
            logger.warning("sync_invalid_payload", error=str(e.cause))
            return SyncResponse(400, {"ok": False, "reason": DispatchReason.INVALID_JSON.value})

        result = self.apply_state_event(incoming)
        if isinstance(result, Rejected):
            return SyncResponse(409, {
                "ok": False,
                "reason": result.reason.value,
                "current": result.current.to_dict(),
            })
        return SyncResponse(200, {"ok": True, "event": result.event.to_dict()})

    def snapshot(self) -> Dict[str, Any]:
        """Snapshot endpoint payload: full state plus the current log cursor."""
        return {
            "state": records_to_snapshot(self.state.snapshot()),
            "lastEventId": self.log.get_last_event_id(),
        }

    def open_stream(self, last_event_id: int = 0) -> StreamSubscription:
        """
        Open a realtime stream for one client.

        A client with a cursor the log still covers gets only the missed
        events; everyone else (fresh connect, evicted history, cursor from a
        previous server lifetime) gets a full snapshot.
        """
        subscription_frames = []
        last_sent_id = 0

        if last_event_id > 0 and self.log.covers(last_event_id):
            missed = self.log.get_events_after(last_event_id)
            subscription_frames.extend(format_state(e) for e in missed)
            last_sent_id = missed[-1].event_id if missed else last_event_id
            logger.info("stream_resumed", last_event_id=last_event_id, replayed=len(missed))
        else:
            if last_event_id > 0:
                logger.warning(
                    "stream_backfill_unavailable",
                    last_event_id=last_event_id,
                    oldest_retained=self.log.get_oldest_event_id(),
                    newest=self.log.get_last_event_id(),
                )
            last_sent_id = self.log.get_last_event_id()
            subscription_frames.append(format_event(
                "snapshot",
                records_to_snapshot(self.state.snapshot()),
                event_id=last_sent_id or None,
            ))
            logger.info("stream_opened", snapshot_keys=len(self.state))

        subscription_frames.append(format_comment("connected"))

        return StreamSubscription(
            subscription_frames,
            self.bus.subscribe,
            heartbeat_interval=self.config.heartbeat_interval,
            last_sent_id=last_sent_id,
        )


__all__ = ['ApplyEngine', 'parse_last_event_id', 'LAST_EVENT_ID_HEADER', 'LAST_EVENT_ID_PARAM']
