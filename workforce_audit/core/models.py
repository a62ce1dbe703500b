from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from workforce_audit.contracts.event_types import AuditEventType, entity_type as entity_type_of

# Keys of the wire `Data` object that carry envelope fields rather than metadata.
RESERVED_DATA_KEYS = ("entityId", "actor", "before", "after", "snapshotsOffloaded")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class MonotonicUtcClock:
    """UTC timestamps that never go backwards, even if the wall clock is stepped.

    A reading at or before the previous one is moved to previous + 1us.
    """

    def __init__(self, wall: Callable[[], datetime] = utc_now) -> None:
        self._wall = wall
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def __call__(self) -> datetime:
        with self._lock:
            now = as_utc(self._wall())
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


# Shared by every publisher in the process.
process_clock = MonotonicUtcClock()


def extract_entity_id(data: Mapping[str, Any], entity_type: str) -> str:
    """Find the affected entity's id in a caller payload.

    Looks at `entityId`, `<EntityType>Id`, `<entityType>Id`, `Id`, `id` in that
    order. A payload without any of them yields "".
    """
    lowered = entity_type[:1].lower() + entity_type[1:]
    for name in ("entityId", f"{entity_type}Id", f"{lowered}Id", "Id", "id"):
        value = data.get(name)
        if value is not None and value != "":
            return str(value)
    return ""


@dataclass(frozen=True)
class EventEnvelope:
    """One domain event as carried from the publisher to the audit worker.

    `before`/`after` are opaque snapshots: the pipeline never inspects them, it
    only requires that they survive JSON serialization unchanged.
    """

    event_id: str
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    timestamp: datetime
    actor: Optional[str] = None
    before: Any = None
    after: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Snapshots were moved to the side channel and must be read back by the consumer.
    snapshots_offloaded: bool = False

    @property
    def routing_key(self) -> str:
        return self.event_type.routing_key

    @classmethod
    def from_data(
        cls,
        *,
        event_id: str,
        event_type: AuditEventType,
        timestamp: datetime,
        data: Mapping[str, Any],
    ) -> "EventEnvelope":
        label = entity_type_of(event_type)
        actor = data.get("actor")
        return cls(
            event_id=event_id,
            event_type=event_type,
            entity_type=label,
            entity_id=extract_entity_id(data, label),
            timestamp=as_utc(timestamp),
            actor=str(actor) if actor is not None else None,
            before=data.get("before"),
            after=data.get("after"),
            metadata={k: v for k, v in data.items() if k not in RESERVED_DATA_KEYS},
            snapshots_offloaded=data.get("snapshotsOffloaded") is True,
        )

    def data(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.metadata)
        d["entityId"] = self.entity_id
        if self.actor is not None:
            d["actor"] = self.actor
        if self.before is not None:
            d["before"] = self.before
        if self.after is not None:
            d["after"] = self.after
        if self.snapshots_offloaded:
            d["snapshotsOffloaded"] = True
        return d

    def to_wire(self) -> dict[str, Any]:
        return {
            "EventId": self.event_id,
            "EventType": self.routing_key,
            "Timestamp": as_utc(self.timestamp).isoformat(),
            "Data": self.data(),
        }

    def with_snapshots(self, before: Any, after: Any) -> "EventEnvelope":
        return replace(self, before=before, after=after, snapshots_offloaded=False)

    def without_snapshots(self) -> "EventEnvelope":
        """Wire form after the snapshots went to the side channel."""
        return replace(self, before=None, after=None, snapshots_offloaded=True)


@dataclass(frozen=True)
class AuditRecord:
    """A persisted envelope plus store-assigned metadata."""

    envelope: EventEnvelope
    record_id: Optional[str] = None
    sequence: Optional[int] = None

    @property
    def event_id(self) -> str:
        return self.envelope.event_id

    @property
    def timestamp(self) -> datetime:
        return self.envelope.timestamp

    def to_document(self) -> dict[str, Any]:
        """Document layout of the `AuditLogs` collection."""
        env = self.envelope
        return {
            "eventId": env.event_id,
            "eventType": env.event_type.value,
            "routingKey": env.routing_key,
            "entityType": env.entity_type,
            "entityId": env.entity_id,
            "actor": env.actor,
            "timestamp": env.timestamp,
            "before": env.before,
            "after": env.after,
            "metadata": dict(env.metadata),
        }

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form for the query API."""
        d = self.to_document()
        d["timestamp"] = as_utc(self.envelope.timestamp).isoformat()
        d["id"] = self.record_id
        return d

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "AuditRecord":
        ts = doc["timestamp"]
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        env = EventEnvelope(
            event_id=doc["eventId"],
            event_type=AuditEventType(doc["eventType"]),
            entity_type=doc["entityType"],
            entity_id=doc.get("entityId", ""),
            timestamp=as_utc(ts),
            actor=doc.get("actor"),
            before=doc.get("before"),
            after=doc.get("after"),
            metadata=dict(doc.get("metadata") or {}),
        )
        record_id = doc.get("_id")
        return cls(
            envelope=env,
            record_id=str(record_id) if record_id is not None else None,
            sequence=doc.get("sequence"),
        )
