"""
Wire types shared by the server and client halves of Zuno.

A ``StateEvent`` is the unit of synchronization. On the wire it is a JSON
object with camelCase keys; optional fields are omitted when unset.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from .utils.errors import ValidationError


class Via(Enum):
    """Transport an event arrived through. Informational only."""
    HTTP = "http"
    SSE = "sse"
    BROADCAST = "broadcast"


class DispatchReason(Enum):
    """Reasons attached to non-successful dispatch and sync results."""
    VERSION_CONFLICT = "VERSION_CONFLICT"
    CONFLICT = "CONFLICT"
    OFFLINE_QUEUED = "OFFLINE_QUEUED"
    NETWORK_ERROR_QUEUED = "NETWORK_ERROR_QUEUED"
    INVALID_JSON = "INVALID_JSON"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"


@dataclass(frozen=True)
class StateEvent:
    """A write to a single store, before or after server acceptance."""
    store_key: str
    state: Any = None
    base_version: Optional[int] = None
    version: Optional[int] = None
    origin: Optional[str] = None
    ts: Optional[float] = None
    event_id: Optional[int] = None
    via: Optional[Via] = None

    def __post_init__(self):
        if not isinstance(self.store_key, str) or not self.store_key:
            raise ValidationError("storeKey", self.store_key, "must be a non-empty string")

    def evolve(self, **changes) -> "StateEvent":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON wire shape."""
        data: Dict[str, Any] = {"storeKey": self.store_key, "state": self.state}
        if self.base_version is not None:
            data["baseVersion"] = self.base_version
        if self.version is not None:
            data["version"] = self.version
        if self.origin is not None:
            data["origin"] = self.origin
        if self.ts is not None:
            data["ts"] = self.ts
        if self.event_id is not None:
            data["eventId"] = self.event_id
        if self.via is not None:
            data["via"] = self.via.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StateEvent":
        """
        Create from the JSON wire shape.

        Raises:
            ValidationError: If the payload is not an object, has no usable
                storeKey, or carries non-integer version fields
        """
        if not isinstance(data, Mapping):
            raise ValidationError("event", data, "must be a JSON object")

        for name in ("baseVersion", "version", "eventId"):
            value = data.get(name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(name, value, "must be an integer")

        via = data.get("via")
        try:
            via = Via(via) if via is not None else None
        except ValueError:
            # "bc" is the legacy spelling used by older clients
            via = Via.BROADCAST if via == "bc" else None

        return cls(
            store_key=data.get("storeKey"),
            state=data.get("state"),
            base_version=data.get("baseVersion"),
            version=data.get("version"),
            origin=data.get("origin"),
            ts=data.get("ts"),
            event_id=data.get("eventId"),
            via=via,
        )


@dataclass(frozen=True)
class UniverseRecord:
    """Authoritative value and version of a single store."""
    state: Any = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state, "version": self.version}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UniverseRecord":
        """
        Raises:
            ValidationError: If ``version`` is present but not an integer
        """
        version = data.get("version")
        if version is None:
            version = 0
        elif isinstance(version, bool) or not isinstance(version, int):
            raise ValidationError("version", version, "must be an integer")
        return cls(state=data.get("state"), version=version)


@dataclass(frozen=True)
class Accepted:
    """The Apply Engine accepted a write."""
    event: StateEvent
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Rejected:
    """The Apply Engine rejected a write because its base version was stale."""
    current: UniverseRecord
    reason: DispatchReason = DispatchReason.VERSION_CONFLICT
    ok: bool = field(default=False, init=False)


ApplyResult = Union[Accepted, Rejected]


@dataclass(frozen=True)
class SyncResponse:
    """Status and JSON body of a sync endpoint exchange."""
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a dispatch as seen by the caller."""
    ok: bool
    status: int
    body: Any = None
    reason: Optional[DispatchReason] = None

    @property
    def queued(self) -> bool:
        return self.reason in (DispatchReason.OFFLINE_QUEUED, DispatchReason.NETWORK_ERROR_QUEUED)

    def to_dict(self) -> Dict[str, Any]:
        data = {"ok": self.ok, "status": self.status, "json": self.body}
        if self.reason is not None:
            data["reason"] = self.reason.value
        return data


def snapshot_to_records(snapshot: Mapping[str, Any]) -> Dict[str, UniverseRecord]:
    """Parse a ``{storeKey: {state, version}}`` map into records."""
    return {
        key: UniverseRecord.from_dict(rec if isinstance(rec, Mapping) else {"state": rec})
        for key, rec in snapshot.items()
    }


def records_to_snapshot(records: Mapping[str, UniverseRecord]) -> Dict[str, Dict[str, Any]]:
    """Render records as the ``{storeKey: {state, version}}`` wire map."""
    return {key: rec.to_dict() for key, rec in records.items()}


__all__ = [
    'Via',
    'DispatchReason',
    'StateEvent',
    'UniverseRecord',
    'Accepted',
    'Rejected',
    'ApplyResult',
    'SyncResponse',
    'DispatchResult',
    'snapshot_to_records',
    'records_to_snapshot',
]
