"""
Dispatch orchestrator: the client-side write path.

Every event goes through ``dispatch``. Events from another actor (or
tagged as having arrived over the realtime stream or the peer channel) are
applied locally and never re-sent. Local writes are stamped with this
client's id and the base version it last saw, applied optimistically,
relayed to peers, then delivered to the sync endpoint or parked in the
offline queue.
"""

import asyncio
from typing import Any, Callable, Optional

from ..core.store import same_value
from ..core.universe import Universe
from ..events import DispatchReason, DispatchResult, StateEvent, SyncResponse, Via
from ..transport.base import SyncTransport
from ..utils.errors import NetworkError
from ..utils.logging import get_logger
from .apply import apply_incoming_event
from .broadcast import CrossTabBroadcast
from .conflict import ConflictResolver, server_wins
from .connectivity import Connectivity
from .queue import OfflineQueue
from .versions import VersionTable

logger = get_logger("zuno.sync.orchestrator")

DEFAULT_MAX_CONFLICT_RETRIES = 3


class DispatchOrchestrator:
    """
    Client-side dispatch core.

    Args:
        universe: Local stores
        versions: Last known version per key
        client_id: Local actor id stamped on outgoing writes
        sync: Transport to the sync endpoint; without one the client runs
            local-only and relays writes to peers with a local version
        broadcast: Optional peer relay
        queue: Offline queue
        connectivity: Online/offline signal
        resolver: Called as ``resolver(local, server, key)`` on a version
            conflict
        optimistic: Apply local writes before the server confirms them
        max_conflict_retries: Upper bound on automatic re-sends after
            conflicts for one dispatch
    """

    def __init__(
        self,
        universe: Universe,
        versions: VersionTable,
        client_id: str,
        sync: Optional[SyncTransport] = None,
        broadcast: Optional[CrossTabBroadcast] = None,
        queue: Optional[OfflineQueue] = None,
        connectivity: Optional[Connectivity] = None,
        resolver: ConflictResolver = server_wins,
        optimistic: bool = True,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
    ):
        self.universe = universe
        self.versions = versions
        self.client_id = client_id
        self.sync = sync
        self.broadcast = broadcast
        self.queue = queue if queue is not None else OfflineQueue()
        self.connectivity = connectivity or Connectivity()
        self.resolver = resolver
        self.optimistic = optimistic
        self.max_conflict_retries = max_conflict_retries

        self.is_flushing = False
        self._in_flight: Optional[str] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None

    def start(self) -> None:
        """Flush the offline queue whenever connectivity comes back."""
        if self._unsubscribe_connectivity is None:
            self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity)

    async def stop(self) -> None:
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        await self.wait_flushed()

    def has_pending(self, store_key: str) -> bool:
        """Whether a queued write for the key is waiting or being flushed."""
        return self.queue.has(store_key) or self._in_flight == store_key

    def is_incoming(self, event: StateEvent) -> bool:
        if event.origin is not None and event.origin != self.client_id:
            return True
        return event.via in (Via.SSE, Via.BROADCAST)

    async def dispatch(self, event: StateEvent) -> DispatchResult:
        if self.is_incoming(event):
            apply_incoming_event(self.universe, self.versions, event, self.client_id)
            return DispatchResult(ok=True, status=200)
        return await self._dispatch_outgoing(event)

    async def _dispatch_outgoing(self, event: StateEvent) -> DispatchResult:
        key = event.store_key
        stamped = StateEvent(
            store_key=key,
            state=event.state,
            base_version=self.versions.get(key),
            origin=self.client_id,
        )

        if self.sync is None:
            version = self.versions.bump(key)
            self._apply_local(key, stamped.state)
            if self.broadcast is not None:
                self.broadcast.publish(stamped.evolve(version=version))
            return DispatchResult(ok=True, status=200)

        bumped = False
        if self.optimistic:
            self._apply_local(key, stamped.state)
            self.versions.bump(key)
            bumped = True

        if self.broadcast is not None:
            self.broadcast.publish(stamped)

        if not self.connectivity.online:
            self._enqueue(stamped, bumped)
            return DispatchResult(ok=False, status=0, reason=DispatchReason.OFFLINE_QUEUED)

        if self.has_pending(key):
            # an earlier write for this key is still queued; stay behind it
            self._enqueue(stamped, bumped)
            self.schedule_flush()
            return DispatchResult(ok=False, status=0, reason=DispatchReason.OFFLINE_QUEUED)

        try:
            response = await self.sync.publish(stamped)
        except NetworkError as e:
            logger.warning("dispatch_network_error", store_key=key, error=str(e))
            self._enqueue(stamped, bumped)
            return DispatchResult(
                ok=False,
                status=500,
                body=str(e),
                reason=DispatchReason.NETWORK_ERROR_QUEUED,
            )

        return await self._reconcile(stamped, response)

    async def _reconcile(
        self,
        sent: StateEvent,
        response: SyncResponse,
        attempt: int = 0,
        from_queue: bool = False,
    ) -> DispatchResult:
        """
        Turn a sync endpoint response into a dispatch result, resolving conflicts.

        A coalesced queue entry stands for several local bumps but only one
        server version, so after delivering one the server version is taken
        as-is unless another write for the key is already queued.
        """
        key = sent.store_key
        body = response.body if isinstance(response.body, dict) else {}

        if response.ok:
            confirmed = body.get("event") or {}
            version = confirmed.get("version")
            if isinstance(version, int):
                if from_queue and not self.queue.has(key):
                    self.versions.replace({key: version})
                else:
                    self.versions.observe(key, version)
            return DispatchResult(ok=True, status=response.status, body=response.body)

        if response.status != 409:
            reason = None
            try:
                reason = DispatchReason(body.get("reason"))
            except ValueError:
                pass
            logger.warning("dispatch_rejected", store_key=key, status=response.status, reason=body.get("reason"))
            return DispatchResult(ok=False, status=response.status, body=response.body, reason=reason)

        current = body.get("current")
        if not isinstance(current, dict):
            return DispatchResult(ok=False, status=409, body=response.body, reason=DispatchReason.CONFLICT)

        server_state = current.get("state")
        server_version = int(current.get("version") or 0)
        resolved = self.resolver(sent.state, server_state, key)

        if same_value(resolved, server_state) or attempt >= self.max_conflict_retries:
            self.versions.replace({key: server_version})
            self._apply_local(key, server_state)
            logger.info(
                "conflict_adopted_server",
                store_key=key,
                server_version=server_version,
                attempts=attempt + 1,
            )
            return DispatchResult(ok=False, status=409, body=response.body, reason=DispatchReason.CONFLICT)

        retry = sent.evolve(state=resolved, base_version=server_version)
        self.versions.replace({key: server_version})
        if self.optimistic:
            self._apply_local(key, resolved)
            self.versions.bump(key)
        if self.broadcast is not None:
            self.broadcast.publish(retry)
        logger.info("conflict_resync", store_key=key, base_version=server_version, attempt=attempt + 1)

        try:
            retry_response = await self.sync.publish(retry)
        except NetworkError as e:
            logger.warning("conflict_resync_failed", store_key=key, error=str(e))
            self._enqueue(retry, self.optimistic)
            return DispatchResult(
                ok=False,
                status=500,
                body=str(e),
                reason=DispatchReason.NETWORK_ERROR_QUEUED,
            )

        return await self._reconcile(retry, retry_response, attempt + 1)

    def _enqueue(self, event: StateEvent, bumped: bool) -> None:
        if not bumped:
            # later writes must chain off this one
            self.versions.bump(event.store_key)
        entry = self.queue.enqueue(event)
        logger.info(
            "dispatch_queued",
            store_key=event.store_key,
            base_version=entry.base_version,
            queue_size=len(self.queue),
        )

    def _apply_local(self, key: str, state: Any) -> None:
        self.universe.get_store(key).set(lambda _prev, v=state: v)

    async def flush(self) -> int:
        """
        Deliver queued writes in order.

        Stops at the first network failure, leaving that entry and the rest
        queued. Entries the endpoint rejects outright (other than version
        conflicts) are dropped so they cannot block the queue.

        Returns:
            Number of entries delivered
        """
        if self.is_flushing or self.sync is None or not self.queue:
            return 0
        if not self.connectivity.online:
            return 0

        self.is_flushing = True
        delivered = 0
        logger.info("flush_started", queue_size=len(self.queue))
        try:
            while self.queue:
                event = self.queue.pop_front()
                self._in_flight = event.store_key
                try:
                    response = await self.sync.publish(event)
                except NetworkError as e:
                    self.queue.requeue_front(event)
                    logger.warning("flush_interrupted", store_key=event.store_key, remaining=len(self.queue), error=str(e))
                    break

                delivered += 1
                if response.ok or response.status == 409:
                    await self._reconcile(event, response, from_queue=True)
                else:
                    logger.warning("flush_entry_dropped", store_key=event.store_key, status=response.status)
                self._in_flight = None
        finally:
            self._in_flight = None
            self.is_flushing = False

        logger.info("flush_finished", delivered=delivered, remaining=len(self.queue))
        return delivered

    def schedule_flush(self) -> Optional[asyncio.Task]:
        """Start a background flush unless one is already running."""
        if self._flush_task is not None and not self._flush_task.done():
            return self._flush_task
        if not self.queue:
            return None
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())
        return self._flush_task

    async def wait_flushed(self) -> None:
        if self._flush_task is not None:
            await asyncio.gather(self._flush_task, return_exceptions=True)

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.schedule_flush()


__all__ = ['DispatchOrchestrator']
