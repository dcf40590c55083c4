"""Version-guarded application of remote events and snapshots to a universe."""

from typing import Any, Mapping

from ..core.universe import Universe
from ..events import StateEvent, snapshot_to_records
from ..utils.logging import get_logger
from .versions import VersionTable

logger = get_logger("zuno.sync.apply")


def apply_incoming_event(
    universe: Universe,
    versions: VersionTable,
    event: StateEvent,
    client_id: str,
) -> bool:
    """
    Apply one event that arrived from the server or a peer.

    Events produced by ``client_id`` are ignored, as are events whose version
    is not newer than the one already known for the key. Events without a
    version (peer relays of unconfirmed writes) are applied without touching
    the version table.

    Returns:
        True if the event was applied
    """
    if event.origin is not None and event.origin == client_id:
        logger.debug("incoming_echo_skipped", store_key=event.store_key, event_id=event.event_id)
        return False

    if event.version is not None:
        known = versions.known(event.store_key)
        if known is not None and event.version <= known:
            logger.debug(
                "incoming_stale_skipped",
                store_key=event.store_key,
                version=event.version,
                known=known,
            )
            return False
        versions.observe(event.store_key, event.version)

    universe.get_store(event.store_key).set(lambda _prev, v=event.state: v)
    return True


def apply_snapshot(
    universe: Universe,
    versions: VersionTable,
    snapshot: Mapping[str, Any],
    only_newer: bool = False,
) -> int:
    """
    Apply a ``{storeKey: {state, version}}`` snapshot.

    Every received state is applied unless ``only_newer`` is set, in which
    case keys whose received version is behind the known one are skipped.
    Tracked versions become ``max(existing, received)``.

    Returns:
        Number of keys applied
    """
    records = snapshot_to_records(snapshot)
    if only_newer:
        records = {
            key: rec for key, rec in records.items()
            if rec.version >= versions.get(key)
        }
    versions.merge({key: rec.version for key, rec in records.items()})
    universe.restore({key: rec.state for key, rec in records.items()})
    return len(records)


__all__ = ['apply_incoming_event', 'apply_snapshot']
