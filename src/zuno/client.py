"""
Client facade.

``Zuno`` wires a universe to the dispatch orchestrator, the realtime
channel and the peer broadcast, and exposes a small store-oriented API::

    async with create_zuno(sse_url=..., sync_url=...) as zuno:
        counter = zuno.store("counter", lambda: 0)
        await counter.set(lambda n: n + 1)
"""

from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union

from .core.store import Store, Unsubscribe
from .core.universe import Universe
from .events import DispatchResult, StateEvent, snapshot_to_records
from .sync.broadcast import CrossTabBroadcast
from .sync.conflict import ConflictResolutionStrategy, ConflictResolver, resolver_for
from .sync.connectivity import Connectivity
from .sync.middleware import Middleware, MiddlewareAPI, MiddlewarePipeline
from .sync.orchestrator import DispatchOrchestrator
from .sync.queue import OfflineQueue
from .sync.realtime import Backoff, RealtimeChannel
from .sync.versions import VersionTable
from .transport.base import PeerChannel, RealtimeTransport, SyncTransport
from .transport.http import HttpSyncTransport
from .transport.memory import InMemoryPeerHub
from .transport.sse import SSETransport
from .utils.config import ClientConfig
from .utils.errors import ConfigurationError
from .utils.logging import get_logger

logger = get_logger("zuno.client")

T = TypeVar('T')


class BoundStore(Generic[T]):
    """A store handle whose ``set`` goes through dispatch."""

    def __init__(self, zuno: "Zuno", key: str, init: Optional[Callable[[], T]] = None):
        self._zuno = zuno
        self.key = key
        self._init = init
        self._store: Store[T] = zuno.universe.get_store(key, init)

    def raw(self) -> Store[T]:
        return self._store

    def get(self) -> T:
        return self._store.get()

    async def set(self, next_value: Union[T, Callable[[T], T]]) -> DispatchResult:
        return await self._zuno.set(self.key, next_value, self._init)

    def subscribe(self, listener: Callable[[T], None]) -> Unsubscribe:
        return self._store.subscribe(listener)

    def __repr__(self) -> str:
        return f"BoundStore(key={self.key!r}, state={self.get()!r})"


class Zuno:
    """
    A synchronized client.

    Transports are taken from the arguments, or built from ``config`` URLs
    (SSE for the realtime stream, HTTP for sync and snapshot). A peer
    channel comes from ``peer_channel`` or, with ``config.channel_name``,
    from ``peer_hub``.

    Args:
        config: Client settings
        universe: Stores to synchronize; a new one by default
        realtime: Realtime stream transport
        sync: Sync endpoint transport
        peer_channel: Channel shared with local peers
        peer_hub: Hub to open ``config.channel_name`` on
        resolver: Conflict resolver or strategy; defaults to
            ``config.conflict_strategy``
        middleware: Dispatch middleware, outermost first
        connectivity: Online/offline signal
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        universe: Optional[Universe] = None,
        realtime: Optional[RealtimeTransport] = None,
        sync: Optional[SyncTransport] = None,
        peer_channel: Optional[PeerChannel] = None,
        peer_hub: Optional[InMemoryPeerHub] = None,
        resolver: Union[ConflictResolver, ConflictResolutionStrategy, str, None] = None,
        middleware: Optional[List[Middleware]] = None,
        connectivity: Optional[Connectivity] = None,
    ):
        self.config = config or ClientConfig()
        self.client_id = self.config.client_id
        self.universe = universe if universe is not None else Universe()
        self.versions = VersionTable()
        self.queue = OfflineQueue()
        self.connectivity = connectivity or Connectivity()
        self._owned: List[Any] = []
        self._last_event_id = 0
        self._started = False

        if sync is None and self.config.sync_url:
            sync = HttpSyncTransport(
                self.config.sync_url,
                snapshot_url=self.config.snapshot_url,
                timeout=self.config.request_timeout,
            )
            self._owned.append(sync)
        if realtime is None and self.config.sse_url:
            realtime = SSETransport(self.config.sse_url, connect_timeout=self.config.request_timeout)
            self._owned.append(realtime)
        if peer_channel is None and self.config.channel_name:
            if peer_hub is None:
                raise ConfigurationError(
                    f"channel_name '{self.config.channel_name}' needs a peer_hub or peer_channel"
                )
            peer_channel = peer_hub.channel(self.config.channel_name)

        self.sync_transport = sync
        self.realtime_transport = realtime

        self.broadcast: Optional[CrossTabBroadcast] = None
        if peer_channel is not None:
            self.broadcast = CrossTabBroadcast(
                peer_channel,
                self.universe,
                self.versions,
                self.client_id,
                on_event=self.dispatch,
                bootstrap_timeout=self.config.bootstrap_timeout,
            )

        self.orchestrator = DispatchOrchestrator(
            self.universe,
            self.versions,
            self.client_id,
            sync=sync,
            broadcast=self.broadcast,
            queue=self.queue,
            connectivity=self.connectivity,
            resolver=resolver_for(resolver if resolver is not None else self.config.conflict_strategy),
            optimistic=self.config.optimistic,
        )

        self.pipeline = MiddlewarePipeline(middleware)
        self._dispatch = self.pipeline.build(
            self.orchestrator.dispatch,
            MiddlewareAPI(self.universe, self.client_id, self.versions),
        )

        self.realtime: Optional[RealtimeChannel] = None
        if realtime is not None:
            self.realtime = RealtimeChannel(
                realtime,
                self.universe,
                self.versions,
                self.client_id,
                on_event=self.dispatch,
                on_open=self.orchestrator.schedule_flush,
                backoff=Backoff(self.config.reconnect_initial_delay, self.config.reconnect_max_delay),
            )

    # Stores

    def store(self, key: str, init: Optional[Callable[[], T]] = None) -> BoundStore[T]:
        return BoundStore(self, key, init)

    def get_store(self, key: str, init: Optional[Callable[[], T]] = None) -> Store[T]:
        return self.universe.get_store(key, init)

    def get(self, key: str, init: Optional[Callable[[], T]] = None) -> T:
        return self.universe.get_store(key, init).get()

    async def set(
        self,
        key: str,
        next_value: Any,
        init: Optional[Callable[[], Any]] = None,
    ) -> DispatchResult:
        """Compute the next state (calling ``next_value`` on the current one if callable) and dispatch it."""
        store = self.universe.get_store(key, init)
        state = next_value(store.get()) if callable(next_value) else next_value
        return await self.dispatch(StateEvent(store_key=key, state=state))

    def subscribe(self, key: str, init: Optional[Callable[[], T]], listener: Callable[[T], None]) -> Unsubscribe:
        return self.universe.get_store(key, init).subscribe(listener)

    async def dispatch(self, event: StateEvent) -> DispatchResult:
        """Run an event through the middleware pipeline and the orchestrator."""
        return await self._dispatch(event)

    # Snapshots

    def hydrate_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        """
        Seed the client from a snapshot endpoint payload.

        Store values, tracked versions and the resume cursor are all taken
        from the snapshot.

        Raises:
            ValidationError: If a record carries a non-integer version
        """
        records = snapshot_to_records(snapshot.get("state") or {})
        self.versions.replace({key: rec.version for key, rec in records.items()})
        self.universe.restore({key: rec.state for key, rec in records.items()})
        self.last_event_id = int(snapshot.get("lastEventId") or 0)
        logger.info("snapshot_hydrated", keys=len(records), last_event_id=self.last_event_id)

    async def fetch_snapshot(self) -> Dict[str, Any]:
        """Cold start: read the snapshot endpoint and hydrate from it."""
        if self.sync_transport is None:
            raise ConfigurationError("fetch_snapshot needs a sync transport")
        snapshot = await self.sync_transport.fetch_snapshot()
        self.hydrate_snapshot(snapshot)
        return snapshot

    @property
    def last_event_id(self) -> int:
        if self.realtime is not None:
            return self.realtime.last_event_id
        return self._last_event_id

    @last_event_id.setter
    def last_event_id(self, value: int) -> None:
        self._last_event_id = value
        if self.realtime is not None:
            self.realtime.last_event_id = value

    # Lifecycle

    async def start(self) -> "Zuno":
        if self._started:
            return self
        self._started = True
        self.orchestrator.start()
        if self.broadcast is not None:
            self.broadcast.start()
        if self.realtime is not None:
            self.realtime.start()
        logger.info(
            "client_started",
            client_id=self.client_id,
            realtime=self.realtime is not None,
            sync=self.sync_transport is not None,
            broadcast=self.broadcast is not None,
        )
        return self

    async def stop(self) -> None:
        """Close the realtime stream and the peer channel. In-flight requests are left to finish."""
        if not self._started:
            return
        self._started = False
        if self.realtime is not None:
            await self.realtime.stop()
        if self.broadcast is not None:
            self.broadcast.stop()
        await self.orchestrator.stop()
        for transport in self._owned:
            await transport.close()
        logger.info("client_stopped", client_id=self.client_id)

    async def __aenter__(self) -> "Zuno":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def __repr__(self) -> str:
        return f"Zuno(client_id={self.client_id!r}, stores={len(self.universe)})"


def create_zuno(config: Optional[ClientConfig] = None, **kwargs) -> Zuno:
    """
    Build a client.

    Keyword arguments naming ``ClientConfig`` fields are used to build the
    config when none is given; the rest are passed to ``Zuno``.
    """
    if config is None:
        fields = set(ClientConfig.model_fields)
        config = ClientConfig(**{k: kwargs.pop(k) for k in list(kwargs) if k in fields})
    return Zuno(config, **kwargs)


__all__ = ['Zuno', 'BoundStore', 'create_zuno']
