from __future__ import annotations

import itertools
import threading
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional

import bson
import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from workforce_audit.audit_store import store as store_module
from workforce_audit.audit_store.store import InMemoryAuditLogStore, MongoAuditLogStore, normalize_event_type
from workforce_audit.contracts.event_types import AuditEventType
from workforce_audit.core.errors import MalformedMessage, PersistenceFailure
from workforce_audit.core.models import AuditRecord, EventEnvelope


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _record(event_id: str, et: AuditEventType, entity_id: str, minutes: int = 0) -> AuditRecord:
    return AuditRecord(
        envelope=EventEnvelope.from_data(
            event_id=event_id,
            event_type=et,
            timestamp=T0 + timedelta(minutes=minutes),
            data={"entityId": entity_id, "actor": "u1"},
        )
    )


class _FakeCursor:
    def __init__(self, docs: list[dict]) -> None:
        self._docs = docs

    def sort(self, keys: list[tuple[str, int]]) -> "_FakeCursor":
        for field, direction in reversed(keys):
            self._docs.sort(key=lambda d: d[field], reverse=direction < 0)
        return self

    def skip(self, n: int) -> "_FakeCursor":
        self._docs = self._docs[n:]
        return self

    def limit(self, n: int) -> "_FakeCursor":
        self._docs = self._docs[:n]
        return self

    def __iter__(self):
        return iter(list(self._docs))


def _matches(doc: dict, flt: dict) -> bool:
    for key, cond in flt.items():
        value = doc.get(key)
        if isinstance(cond, dict):
            if "$gte" in cond and not value >= cond["$gte"]:
                return False
            if "$lte" in cond and not value <= cond["$lte"]:
                return False
        elif value != cond:
            return False
    return True


class _FakeCollection:
    def __init__(self) -> None:
        self.docs: list[dict] = []
        self.indexes: dict[str, dict] = {}
        self.fail_writes = False
        self.race_on_next_upsert = False
        self._ids = itertools.count(1)
        self.database = SimpleNamespace(command=self._command)
        self.pings = 0

    def _command(self, name: str) -> dict:
        self.pings += 1
        return {"ok": 1}

    def create_index(self, keys: list, unique: bool = False, name: Optional[str] = None) -> str:
        self.indexes[name or "idx"] = {"keys": keys, "unique": unique}
        return name or "idx"

    def update_one(self, flt: dict, update: dict, upsert: bool = False) -> Any:
        if self.fail_writes:
            raise ServerSelectionTimeoutError("no servers available")
        if self.race_on_next_upsert:
            self.race_on_next_upsert = False
            raise DuplicateKeyError("E11000 duplicate key error")
        # The driver encodes before sending; unrepresentable values fail here.
        bson.encode(update)
        if any(_matches(d, flt) for d in self.docs):
            return SimpleNamespace(upserted_id=None, matched_count=1)
        doc = dict(flt)
        doc.update(update["$setOnInsert"])
        doc["_id"] = next(self._ids)
        self.docs.append(doc)
        return SimpleNamespace(upserted_id=doc["_id"], matched_count=0)

    def find(self, flt: dict) -> _FakeCursor:
        return _FakeCursor([dict(d) for d in self.docs if _matches(d, flt)])

    def aggregate(self, pipeline: list[dict]) -> list[dict]:
        field = pipeline[0]["$group"]["_id"].lstrip("$")
        counts: dict[str, int] = {}
        for d in self.docs:
            counts[d[field]] = counts.get(d[field], 0) + 1
        return [{"_id": k, "count": v} for k, v in counts.items()]


@pytest.fixture(params=["memory", "mongo"])
def store(request: pytest.FixtureRequest):
    if request.param == "memory":
        return InMemoryAuditLogStore()
    return MongoAuditLogStore(mongo_collection=_FakeCollection())


def test_insert_is_idempotent_on_event_id(store) -> None:
    rec = _record("e1", AuditEventType.EMPLOYEE_CREATED, "E1")
    assert store.insert(rec) is True
    assert store.insert(rec) is False
    assert len(store.query_by_entity("Employee", "E1")) == 1


def test_query_by_entity_is_ascending_with_insertion_tiebreak(store) -> None:
    store.insert(_record("late", AuditEventType.EMPLOYEE_UPDATED, "E42", minutes=5))
    store.insert(_record("tie-1", AuditEventType.EMPLOYEE_UPDATED, "E42", minutes=1))
    store.insert(_record("tie-2", AuditEventType.EMPLOYEE_DELETED, "E42", minutes=1))
    store.insert(_record("first", AuditEventType.EMPLOYEE_CREATED, "E42", minutes=0))
    store.insert(_record("other", AuditEventType.EMPLOYEE_CREATED, "E7", minutes=2))

    got = [r.event_id for r in store.query_by_entity("Employee", "E42")]
    assert got == ["first", "tie-1", "tie-2", "late"]
    paged = [r.event_id for r in store.query_by_entity("Employee", "E42", skip=1, limit=2)]
    assert paged == ["tie-1", "tie-2"]
    assert store.query_by_entity("Employee", "nope") == []


def test_recent_and_event_type_queries_are_newest_first(store) -> None:
    store.insert(_record("a", AuditEventType.TASK_CREATED, "T1", minutes=0))
    store.insert(_record("b", AuditEventType.TASK_STATUS_UPDATED, "T1", minutes=1))
    store.insert(_record("c", AuditEventType.TASK_CREATED, "T2", minutes=2))

    assert [r.event_id for r in store.recent(2)] == ["c", "b"]
    assert [r.event_id for r in store.query_by_event_type("task.created")] == ["c", "a"]
    assert [r.event_id for r in store.query_by_event_type("TaskCreated", limit=1)] == ["c"]


def test_filtered_query_and_summary(store) -> None:
    store.insert(_record("e1", AuditEventType.EMPLOYEE_CREATED, "E1", minutes=0))
    store.insert(_record("e2", AuditEventType.EMPLOYEE_UPDATED, "E1", minutes=10))
    store.insert(_record("l1", AuditEventType.LEAVE_REQUEST_APPROVED, "L1", minutes=20))
    store.insert(_record("e3", AuditEventType.EMPLOYEE_UPDATED, "E2", minutes=30))

    assert [r.event_id for r in store.query(entity_type="Employee")] == ["e3", "e2", "e1"]
    assert [r.event_id for r in store.query(event_type="employee.updated", limit=1)] == ["e3"]
    window = store.query(start=T0 + timedelta(minutes=5), end=T0 + timedelta(minutes=20))
    assert [r.event_id for r in window] == ["l1", "e2"]
    assert store.count_by_entity_type() == {"Employee": 3, "LeaveRequest": 1}
    assert store.ping() is True


def test_normalize_event_type() -> None:
    assert normalize_event_type("employee.updated") == "EmployeeUpdated"
    assert normalize_event_type("EmployeeUpdated") == "EmployeeUpdated"
    assert normalize_event_type("something.else") == "something.else"


def test_mongo_store_creates_indexes_and_document_layout() -> None:
    coll = _FakeCollection()
    store = MongoAuditLogStore(mongo_collection=coll)
    assert coll.indexes["ux_eventId"]["unique"] is True
    assert "ix_entity_timestamp" in coll.indexes

    store.insert(_record("e1", AuditEventType.PROJECT_MEMBER_ADDED, "9"))
    doc = coll.docs[0]
    assert doc["eventId"] == "e1"
    assert doc["eventType"] == "ProjectMemberAdded"
    assert doc["routingKey"] == "project.member.added"
    assert doc["entityType"] == "Project"
    assert doc["timestamp"] == T0
    assert store.query_by_entity("Project", "9")[0].record_id == "1"


def test_mongo_store_duplicate_key_race_counts_as_duplicate() -> None:
    coll = _FakeCollection()
    store = MongoAuditLogStore(mongo_collection=coll)
    coll.race_on_next_upsert = True
    assert store.insert(_record("e1", AuditEventType.TASK_CREATED, "T1")) is False


def test_mongo_store_wraps_driver_errors() -> None:
    coll = _FakeCollection()
    store = MongoAuditLogStore(mongo_collection=coll)
    coll.fail_writes = True
    with pytest.raises(PersistenceFailure):
        store.insert(_record("e1", AuditEventType.TASK_CREATED, "T1"))


@pytest.mark.parametrize("after", [{"badgeNo": 2**64}, {"photo": object()}])
def test_mongo_store_rejects_documents_bson_cannot_encode(after: dict) -> None:
    coll = _FakeCollection()
    store = MongoAuditLogStore(mongo_collection=coll)
    record = AuditRecord(
        envelope=EventEnvelope.from_data(
            event_id="e1",
            event_type=AuditEventType.EMPLOYEE_UPDATED,
            timestamp=T0,
            data={"entityId": "42", "after": after},
        )
    )
    with pytest.raises(MalformedMessage):
        store.insert(record)
    assert coll.docs == []

    assert store.insert(_record("e2", AuditEventType.EMPLOYEE_UPDATED, "42")) is True


def test_mongo_store_opens_one_client_under_concurrent_first_use(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[Any] = []
    coll = _FakeCollection()

    class _SlowClient:
        def __init__(self, url: str, **kw: Any) -> None:
            time.sleep(0.05)
            created.append(self)

        def __getitem__(self, name: str) -> dict:
            return {"AuditLogs": coll}

        def close(self) -> None:
            pass

    monkeypatch.setattr(store_module, "MongoClient", _SlowClient)
    store = MongoAuditLogStore("mongodb://mongo:27017", "workforce_db", "AuditLogs")
    start = threading.Barrier(8)

    def _insert(i: int) -> None:
        start.wait()
        store.insert(_record(f"e{i}", AuditEventType.TASK_CREATED, "T1", minutes=i))

    threads = [threading.Thread(target=_insert, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(created) == 1
    assert len(coll.docs) == 8
