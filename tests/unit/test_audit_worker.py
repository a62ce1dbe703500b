from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from workforce_audit.audit_store.store import InMemoryAuditLogStore
from workforce_audit.audit_worker.health import WorkerHealthCheck
from workforce_audit.audit_worker.worker import AuditConsumerWorker, WorkerState
from workforce_audit.contracts.event_types import AuditEventType
from workforce_audit.contracts.validation import encode
from workforce_audit.core.backoff import Backoff
from workforce_audit.core.broker import Delivery, Subscription
from workforce_audit.core.errors import BrokerUnavailable, MalformedMessage, PersistenceFailure, SideChannelUnavailable
from workforce_audit.core.models import AuditRecord, EventEnvelope
from workforce_audit.publisher.snapshots import InMemorySnapshotStore


FAST = Backoff(initial_seconds=0.001, maximum_seconds=0.002)


class _FakeConnection:
    """Records settlements; `consume` replays scripted outcomes."""

    def __init__(self, outcomes: Optional[list] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.acks: list[int] = []
        self.nacks: list[tuple[int, bool]] = []
        self.consume_calls = 0
        self.closed = False
        self._stop = threading.Event()

    def consume(self, subscription: Subscription, on_message: Callable, on_ready: Optional[Callable] = None) -> None:
        self.consume_calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else "block"
        if isinstance(outcome, Exception):
            raise outcome
        self._stop.clear()
        if on_ready is not None:
            on_ready()
        if outcome == "block":
            self._stop.wait(5)
        elif outcome == "drop":
            raise BrokerUnavailable("connection reset by peer")

    def stop_consuming(self) -> None:
        self._stop.set()

    def ack(self, delivery_tag: int) -> None:
        self.acks.append(delivery_tag)

    def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        self.nacks.append((delivery_tag, requeue))

    def close(self) -> None:
        self.closed = True


class _FailingStore(InMemoryAuditLogStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def insert(self, record: AuditRecord) -> bool:
        if self.failures:
            self.failures -= 1
            raise PersistenceFailure("mongo write timeout")
        return super().insert(record)


def _body(event_id: str = "evt-1", **data) -> bytes:
    env = EventEnvelope.from_data(
        event_id=event_id,
        event_type=AuditEventType.EMPLOYEE_UPDATED,
        timestamp=datetime(2026, 3, 2, 10, tzinfo=timezone.utc),
        data={"entityId": "E42", "actor": "u1", **data},
    )
    return encode(env)


def _delivery(tag: int, body: bytes) -> Delivery:
    return Delivery(delivery_tag=tag, routing_key="employee.updated", body=body)


def _worker(conn: _FakeConnection, store=None, **kw) -> AuditConsumerWorker:
    kw.setdefault("backoff", FAST)
    kw.setdefault("retry_delay_seconds", 0)
    return AuditConsumerWorker(conn, store if store is not None else InMemoryAuditLogStore(), **kw)


def test_valid_message_is_persisted_then_acked() -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    worker = _worker(conn, store)

    worker.handle_delivery(_delivery(1, _body(before={"t": "Engineer"}, after={"t": "Senior"})))

    assert conn.acks == [1]
    assert conn.nacks == []
    [rec] = store.query_by_entity("Employee", "E42")
    assert rec.envelope.event_type is AuditEventType.EMPLOYEE_UPDATED
    assert rec.envelope.before == {"t": "Engineer"}


def test_redelivered_duplicate_is_acked_without_second_record() -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    worker = _worker(conn, store)

    worker.handle_delivery(_delivery(1, _body()))
    worker.handle_delivery(Delivery(delivery_tag=2, routing_key="employee.updated", body=_body(), redelivered=True))

    assert conn.acks == [1, 2]
    assert len(store) == 1


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        json.dumps({"EventId": "x", "EventType": "payroll.run", "Timestamp": "2026-03-02T10:00:00Z", "Data": {}}).encode(),
        json.dumps({"EventId": "x"}).encode(),
    ],
)
def test_malformed_message_is_nacked_without_requeue(body: bytes) -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    worker = _worker(conn, store)

    worker.handle_delivery(_delivery(7, body))

    assert conn.nacks == [(7, False)]
    assert conn.acks == []
    assert len(store) == 0


def test_persistence_failure_is_nacked_with_requeue_and_retried() -> None:
    conn = _FakeConnection()
    store = _FailingStore(failures=1)
    worker = _worker(conn, store)

    worker.handle_delivery(_delivery(1, _body()))
    assert conn.nacks == [(1, True)]
    assert conn.acks == []

    worker.handle_delivery(_delivery(2, _body()))
    assert conn.acks == [2]
    assert len(store) == 1


def test_unexpected_handler_error_requeues() -> None:
    class _ExplodingStore(InMemoryAuditLogStore):
        def insert(self, record: AuditRecord) -> bool:
            raise RuntimeError("bug")

    conn = _FakeConnection()
    worker = _worker(conn, _ExplodingStore(), retry_delay_seconds=0.05)
    started = time.monotonic()
    worker._on_message(_delivery(3, _body()))
    assert conn.nacks == [(3, True)]
    assert time.monotonic() - started >= 0.04


def test_snapshots_are_rehydrated_and_cleaned_up() -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    snapshots = InMemorySnapshotStore()
    snapshots.put("evt-5", before={"salary": 1}, after={"salary": 2})
    worker = _worker(conn, store, snapshots=snapshots)

    worker.handle_delivery(_delivery(1, _body("evt-5", snapshotsOffloaded=True)))

    [rec] = store.recent(1)
    assert rec.envelope.before == {"salary": 1}
    assert rec.envelope.after == {"salary": 2}
    assert snapshots.get("evt-5") == (None, None)


class _UnreadableSnapshots(InMemorySnapshotStore):
    def get(self, event_id: str):
        raise SideChannelUnavailable("redis timeout")


def test_unreadable_offloaded_snapshots_requeue_instead_of_storing_without_them() -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    snapshots = _UnreadableSnapshots()
    snapshots.put("evt-6", before={"salary": 1}, after={"salary": 2})
    worker = _worker(conn, store, snapshots=snapshots)

    worker.handle_delivery(_delivery(1, _body("evt-6", snapshotsOffloaded=True)))

    assert conn.nacks == [(1, True)]
    assert conn.acks == []
    assert len(store) == 0


def test_expired_snapshots_are_flagged_on_the_record() -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    worker = _worker(conn, store, snapshots=InMemorySnapshotStore())

    worker.handle_delivery(_delivery(1, _body("evt-7", snapshotsOffloaded=True)))

    assert conn.acks == [1]
    [rec] = store.recent(1)
    assert rec.envelope.after is None
    assert rec.envelope.metadata["snapshotsMissing"] is True


def test_event_without_offload_marker_skips_the_snapshot_store() -> None:
    conn = _FakeConnection()
    store = InMemoryAuditLogStore()
    worker = _worker(conn, store, snapshots=_UnreadableSnapshots())

    worker.handle_delivery(_delivery(1, _body("evt-8")))

    assert conn.acks == [1]
    [rec] = store.recent(1)
    assert "snapshotsMissing" not in rec.envelope.metadata


def test_record_the_store_cannot_hold_is_dropped_and_next_event_proceeds() -> None:
    class _RejectingStore(InMemoryAuditLogStore):
        def insert(self, record: AuditRecord) -> bool:
            if record.envelope.after == {"badgeNo": 2**64}:
                raise MalformedMessage("MongoDB can only handle up to 8-byte ints")
            return super().insert(record)

    conn = _FakeConnection()
    store = _RejectingStore()
    worker = _worker(conn, store)

    worker._on_message(_delivery(1, _body("evt-9", after={"badgeNo": 2**64})))
    worker._on_message(_delivery(2, _body("evt-10", after={"badgeNo": 7})))

    assert conn.nacks == [(1, False)]
    assert conn.acks == [2]
    assert [r.event_id for r in store.recent(10)] == ["evt-10"]


def test_run_retries_startup_then_consumes_and_stops() -> None:
    conn = _FakeConnection([BrokerUnavailable("refused"), BrokerUnavailable("refused"), "block"])
    store = InMemoryAuditLogStore()
    worker = _worker(conn, store, startup_max_attempts=5)
    health = WorkerHealthCheck(store, worker)
    assert worker.state is WorkerState.STOPPED

    t = threading.Thread(target=worker.run)
    t.start()
    for _ in range(500):
        if worker.state is WorkerState.CONSUMING:
            break
        time.sleep(0.01)
    assert worker.healthy is True
    assert health.check().healthy is True

    worker.stop()
    t.join(timeout=5)
    assert not t.is_alive()
    assert conn.consume_calls == 3
    assert conn.closed is True
    assert worker.state is WorkerState.STOPPED
    assert health.check().healthy is False


def test_run_faults_when_broker_never_reachable() -> None:
    conn = _FakeConnection([BrokerUnavailable("refused")] * 3)
    worker = _worker(conn, startup_max_attempts=3)

    with pytest.raises(BrokerUnavailable):
        worker.run()

    assert worker.state is WorkerState.FAULTED
    assert conn.consume_calls == 3
    assert conn.closed is True


def test_run_reconnects_after_consuming_was_reached() -> None:
    # After the first successful subscription, drops are retried regardless of the startup budget.
    conn = _FakeConnection(["drop", BrokerUnavailable("refused"), BrokerUnavailable("refused"), "block"])
    worker = _worker(conn, startup_max_attempts=1)

    t = threading.Thread(target=worker.run)
    t.start()
    for _ in range(500):
        if conn.consume_calls == 4 and worker.state is WorkerState.CONSUMING:
            break
        time.sleep(0.01)
    assert worker.state is WorkerState.CONSUMING

    worker.stop()
    t.join(timeout=5)
    assert worker.state is WorkerState.STOPPED


def test_unrecoverable_setup_error_faults() -> None:
    conn = _FakeConnection([PersistenceFailure("cannot prepare collection")])
    worker = _worker(conn)
    with pytest.raises(PersistenceFailure):
        worker.run()
    assert worker.state is WorkerState.FAULTED


def test_stop_before_run_returns_immediately() -> None:
    conn = _FakeConnection()
    worker = _worker(conn)
    worker.stop()
    worker.run()
    assert conn.consume_calls == 0
    assert worker.state is WorkerState.STOPPED
