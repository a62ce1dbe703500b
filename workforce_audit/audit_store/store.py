"""Audit log storage - append-only persistence of audit records.

Records are written by the audit worker and read by the query API and the
report job. Writes are idempotent on `eventId` so that broker redeliveries never
produce duplicate history; there are no update or delete operations.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Optional, Protocol

from bson.errors import BSONError
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from workforce_audit.contracts import topology
from workforce_audit.contracts.event_types import AuditEventType
from workforce_audit.core.errors import MalformedMessage, PersistenceFailure, UnknownEventType
from workforce_audit.core.models import AuditRecord, as_utc

logger = logging.getLogger(__name__)


def normalize_event_type(value: str) -> str:
    """Map a variant name or a routing key to the stored variant name."""
    try:
        return AuditEventType(value).value
    except ValueError:
        pass
    try:
        return AuditEventType.from_routing_key(value).value
    except UnknownEventType:
        return value


class AuditLogStore(Protocol):
    """Interface for audit record persistence."""

    def insert(self, record: AuditRecord) -> bool:
        """Persist a record; returns False if its eventId is already stored.

        Raises MalformedMessage for a record the store can never hold and
        PersistenceFailure for errors worth retrying.
        """
        ...

    def query_by_entity(
        self, entity_type: str, entity_id: str, *, skip: int = 0, limit: Optional[int] = None
    ) -> list[AuditRecord]:
        """Records for one entity, oldest first."""
        ...

    def query_by_event_type(self, event_type: str, *, limit: Optional[int] = None) -> list[AuditRecord]:
        ...

    def recent(self, limit: int = 50) -> list[AuditRecord]:
        """Newest first."""
        ...

    def query(
        self,
        *,
        entity_type: Optional[str] = None,
        event_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Filtered listing, newest first."""
        ...

    def count_by_entity_type(self) -> dict[str, int]:
        ...

    def ping(self) -> bool:
        ...


class InMemoryAuditLogStore:
    """In-memory implementation for testing and local runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, AuditRecord] = {}
        self._next_sequence = 1

    def insert(self, record: AuditRecord) -> bool:
        with self._lock:
            if record.event_id in self._records:
                return False
            seq = self._next_sequence
            self._next_sequence += 1
            self._records[record.event_id] = AuditRecord(
                envelope=record.envelope, record_id=str(seq), sequence=seq
            )
            return True

    def _sorted(self, *, newest_first: bool = False) -> list[AuditRecord]:
        with self._lock:
            records = list(self._records.values())
        records.sort(key=lambda r: (r.timestamp, r.sequence or 0), reverse=newest_first)
        return records

    def query_by_entity(
        self, entity_type: str, entity_id: str, *, skip: int = 0, limit: Optional[int] = None
    ) -> list[AuditRecord]:
        records = [
            r
            for r in self._sorted()
            if r.envelope.entity_type == entity_type and r.envelope.entity_id == entity_id
        ]
        records = records[skip:]
        return records[:limit] if limit is not None else records

    def query_by_event_type(self, event_type: str, *, limit: Optional[int] = None) -> list[AuditRecord]:
        wanted = normalize_event_type(event_type)
        records = [r for r in self._sorted(newest_first=True) if r.envelope.event_type.value == wanted]
        return records[:limit] if limit is not None else records

    def recent(self, limit: int = 50) -> list[AuditRecord]:
        return self._sorted(newest_first=True)[:limit]

    def query(
        self,
        *,
        entity_type: Optional[str] = None,
        event_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        wanted = normalize_event_type(event_type) if event_type else None
        out: list[AuditRecord] = []
        for r in self._sorted(newest_first=True):
            env = r.envelope
            if entity_type and env.entity_type != entity_type:
                continue
            if wanted and env.event_type.value != wanted:
                continue
            if start is not None and env.timestamp < as_utc(start):
                continue
            if end is not None and env.timestamp > as_utc(end):
                continue
            out.append(r)
            if len(out) >= limit:
                break
        return out

    def count_by_entity_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for r in self._sorted():
            counts[r.envelope.entity_type] = counts.get(r.envelope.entity_type, 0) + 1
        return counts

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class MongoAuditLogStore:
    """MongoDB implementation for production.

    One document per event in the `AuditLogs` collection. Indexes:

        { eventId: 1 }                              unique (idempotent insert)
        { entityType: 1, entityId: 1, timestamp: 1 } history by entity
        { timestamp: -1 }                            recent listing

    Ordering ties on `timestamp` are broken by `_id`, which grows with insertion.
    """

    def __init__(
        self,
        url: str = "mongodb://localhost:27017",
        database: str = "workforce_db",
        collection: str = topology.AUDIT_COLLECTION,
        *,
        mongo_collection: Any = None,
    ) -> None:
        self._url = url
        self._database = database
        self._collection_name = collection
        self._client: Optional[MongoClient] = None
        self._collection = None
        self._init_lock = threading.Lock()
        if mongo_collection is not None:
            self._collection = mongo_collection
            self._ensure_indexes(mongo_collection)

    def _get_collection(self):
        coll = self._collection
        if coll is not None:
            return coll
        with self._init_lock:
            if self._collection is None:
                if self._client is None:
                    self._client = MongoClient(self._url, tz_aware=True, serverSelectionTimeoutMS=5000)
                coll = self._client[self._database][self._collection_name]
                try:
                    self._ensure_indexes(coll)
                except PyMongoError as e:
                    raise PersistenceFailure(f"cannot prepare collection {self._collection_name}: {e}") from e
                self._collection = coll
            return self._collection

    @staticmethod
    def _ensure_indexes(coll) -> None:
        coll.create_index([("eventId", ASCENDING)], unique=True, name="ux_eventId")
        coll.create_index(
            [("entityType", ASCENDING), ("entityId", ASCENDING), ("timestamp", ASCENDING)],
            name="ix_entity_timestamp",
        )
        coll.create_index([("timestamp", DESCENDING)], name="ix_timestamp")

    def insert(self, record: AuditRecord) -> bool:
        coll = self._get_collection()
        doc = record.to_document()
        event_id = doc.pop("eventId")
        try:
            result = coll.update_one({"eventId": event_id}, {"$setOnInsert": doc}, upsert=True)
        except DuplicateKeyError:
            # Lost an upsert race against a concurrent insert of the same event.
            return False
        except (BSONError, OverflowError) as e:
            # Not representable in BSON; a redelivery would fail the same way.
            raise MalformedMessage(f"record for event {record.event_id} cannot be stored: {e}") from e
        except PyMongoError as e:
            raise PersistenceFailure(f"insert failed for event {record.event_id}: {e}") from e
        return result.upserted_id is not None

    def _find(self, flt: dict[str, Any], sort: list, *, skip: int = 0, limit: Optional[int] = None):
        coll = self._get_collection()
        try:
            cursor = coll.find(flt).sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [AuditRecord.from_document(doc) for doc in cursor]
        except PyMongoError as e:
            raise PersistenceFailure(f"query failed for {flt}: {e}") from e

    def query_by_entity(
        self, entity_type: str, entity_id: str, *, skip: int = 0, limit: Optional[int] = None
    ) -> list[AuditRecord]:
        return self._find(
            {"entityType": entity_type, "entityId": entity_id},
            [("timestamp", ASCENDING), ("_id", ASCENDING)],
            skip=skip,
            limit=limit,
        )

    def query_by_event_type(self, event_type: str, *, limit: Optional[int] = None) -> list[AuditRecord]:
        return self._find(
            {"eventType": normalize_event_type(event_type)},
            [("timestamp", DESCENDING), ("_id", DESCENDING)],
            limit=limit,
        )

    def recent(self, limit: int = 50) -> list[AuditRecord]:
        return self._find({}, [("timestamp", DESCENDING), ("_id", DESCENDING)], limit=limit)

    def query(
        self,
        *,
        entity_type: Optional[str] = None,
        event_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        flt: dict[str, Any] = {}
        if entity_type:
            flt["entityType"] = entity_type
        if event_type:
            flt["eventType"] = normalize_event_type(event_type)
        if start is not None or end is not None:
            window: dict[str, Any] = {}
            if start is not None:
                window["$gte"] = as_utc(start)
            if end is not None:
                window["$lte"] = as_utc(end)
            flt["timestamp"] = window
        return self._find(flt, [("timestamp", DESCENDING), ("_id", DESCENDING)], limit=limit)

    def count_by_entity_type(self) -> dict[str, int]:
        coll = self._get_collection()
        try:
            rows = coll.aggregate([{"$group": {"_id": "$entityType", "count": {"$sum": 1}}}])
            return {row["_id"]: int(row["count"]) for row in rows}
        except PyMongoError as e:
            raise PersistenceFailure(f"aggregation failed: {e}") from e

    def ping(self) -> bool:
        try:
            self._get_collection().database.command("ping")
        except (PyMongoError, PersistenceFailure) as e:
            logger.warning("MongoDB ping failed: %s", e)
            return False
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._collection = None
