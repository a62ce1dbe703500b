"""Audit consumer worker.

Consumes the audit queue one message at a time and turns every delivery into an
append-only `AuditRecord`:

    decode -> (rehydrate snapshots) -> store.insert -> ack

Delivery handling:
- malformed body            nack without requeue (dead-lettered if configured)
- record the store rejects  nack without requeue
- store failure             wait `retry_delay_seconds`, nack with requeue
- snapshots unreadable      same as a store failure
- snapshots expired         stored without them, flagged `snapshotsMissing`
- anything else             wait `retry_delay_seconds`, nack with requeue
- duplicate eventId         ack, nothing written
- broker lost mid-stream    reconnect and rebind with backoff

Lifecycle: Stopped -> Starting -> Consuming -> Stopping -> Stopped, with Faulted
reachable from Starting (broker never reachable within the attempt budget) and
from Consuming (unrecoverable error while subscribing).
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import replace
from typing import Iterator, Optional

from workforce_audit.audit_store.store import AuditLogStore
from workforce_audit.contracts.validation import decode
from workforce_audit.core.backoff import Backoff
from workforce_audit.core.broker import BrokerConnection, Delivery, Subscription
from workforce_audit.core.errors import (
    BrokerUnavailable,
    MalformedMessage,
    PersistenceFailure,
    SideChannelUnavailable,
)
from workforce_audit.core.models import AuditRecord, EventEnvelope
from workforce_audit.publisher.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    CONSUMING = "Consuming"
    STOPPING = "Stopping"
    FAULTED = "Faulted"


class AuditConsumerWorker:
    def __init__(
        self,
        connection: BrokerConnection,
        store: AuditLogStore,
        *,
        subscription: Optional[Subscription] = None,
        snapshots: Optional[SnapshotStore] = None,
        backoff: Optional[Backoff] = None,
        startup_max_attempts: int = 10,
        retry_delay_seconds: float = 0.5,
    ) -> None:
        self._connection = connection
        self._store = store
        self._subscription = subscription or Subscription()
        self._snapshots = snapshots
        self._backoff = backoff or Backoff()
        self._startup_max_attempts = startup_max_attempts
        self._retry_delay_seconds = retry_delay_seconds

        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self._state = WorkerState.STOPPED
        self._consumed_once = False
        self._delays: Iterator[float] = self._backoff.delays()

    @property
    def state(self) -> WorkerState:
        with self._state_lock:
            return self._state

    @property
    def healthy(self) -> bool:
        return self.state is WorkerState.CONSUMING

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _set_state(self, state: WorkerState) -> None:
        with self._state_lock:
            if self._state is state:
                return
            previous, self._state = self._state, state
        logger.info("Audit worker %s -> %s", previous.value, state.value)

    # -- lifecycle -----------------------------------------------------

    def run(self) -> None:
        """Consume until `stop()` is called.

        Blocks the calling thread. Raises BrokerUnavailable if the broker was
        never reachable within `startup_max_attempts` (0 retries forever); the
        worker is then Faulted.
        """
        self._set_state(WorkerState.STARTING)
        attempts = 0
        try:
            while not self._stop.is_set():
                try:
                    self._connection.consume(self._subscription, self._on_message, on_ready=self._on_ready)
                except BrokerUnavailable as e:
                    if self._stop.is_set():
                        break
                    if not self._consumed_once:
                        attempts += 1
                        if self._startup_max_attempts and attempts >= self._startup_max_attempts:
                            logger.error(
                                "RabbitMQ unreachable after %d attempts, giving up: %s", attempts, e
                            )
                            self._set_state(WorkerState.FAULTED)
                            raise
                    else:
                        self._set_state(WorkerState.STARTING)
                    delay = next(self._delays)
                    logger.warning("RabbitMQ unavailable, reconnecting in %.1fs: %s", delay, e)
                    self._stop.wait(delay)
                    continue
                except Exception:
                    logger.exception("Audit worker failed while consuming %s", self._subscription.queue)
                    self._set_state(WorkerState.FAULTED)
                    raise

                if not self._stop.is_set():
                    # The broker cancelled the consumer without an error.
                    delay = next(self._delays)
                    logger.warning("Consumer on %s cancelled, resubscribing in %.1fs", self._subscription.queue, delay)
                    self._set_state(WorkerState.STARTING)
                    self._stop.wait(delay)
        finally:
            faulted = self.state is WorkerState.FAULTED
            if not faulted:
                self._set_state(WorkerState.STOPPING)
            self._connection.close()
            if not faulted:
                self._set_state(WorkerState.STOPPED)

    def stop(self) -> None:
        """Ask `run()` to return; the message being handled completes first."""
        self._stop.set()
        with self._state_lock:
            if self._state in (WorkerState.STARTING, WorkerState.CONSUMING):
                self._state = WorkerState.STOPPING
        self._connection.stop_consuming()

    def _on_ready(self) -> None:
        self._consumed_once = True
        self._delays = self._backoff.delays()
        if self._stop.is_set():
            # stop() raced with subscription setup.
            self._connection.stop_consuming()
            return
        self._set_state(WorkerState.CONSUMING)
        logger.info(
            "Audit worker consuming %s (bindings: %s)",
            self._subscription.queue,
            ", ".join(self._subscription.routing_keys),
        )

    # -- delivery handling -----------------------------------------------

    def _on_message(self, delivery: Delivery) -> None:
        try:
            self.handle_delivery(delivery)
        except BrokerUnavailable:
            raise
        except Exception:
            logger.exception(
                "Unexpected error handling delivery %s, requeueing",
                delivery.delivery_tag,
                extra={"routing_key": delivery.routing_key, "message_id": delivery.message_id},
            )
            self._stop.wait(self._retry_delay_seconds)
            self._connection.nack(delivery.delivery_tag, requeue=True)

    def handle_delivery(self, delivery: Delivery) -> None:
        """Persist one delivery and settle it with the broker."""
        try:
            envelope = decode(delivery.body)
        except MalformedMessage as e:
            logger.error(
                "Discarding malformed message on %s: %s",
                delivery.routing_key,
                e,
                extra={"delivery_tag": delivery.delivery_tag, "message_id": delivery.message_id},
            )
            self._connection.nack(delivery.delivery_tag, requeue=False)
            return

        offloaded = envelope.snapshots_offloaded
        try:
            envelope = self._rehydrate(envelope)
            inserted = self._store.insert(AuditRecord(envelope=envelope))
        except MalformedMessage as e:
            logger.error(
                "Discarding event %s the audit store rejects: %s",
                envelope.event_id,
                e,
                extra={"delivery_tag": delivery.delivery_tag, "message_id": delivery.message_id},
            )
            self._connection.nack(delivery.delivery_tag, requeue=False)
            return
        except PersistenceFailure as e:
            logger.error(
                "Failed to save audit log for %s %s, requeueing: %s",
                envelope.event_type.value,
                envelope.event_id,
                e,
                extra={"event_id": envelope.event_id, "redelivered": delivery.redelivered},
            )
            self._stop.wait(self._retry_delay_seconds)
            self._connection.nack(delivery.delivery_tag, requeue=True)
            return

        self._connection.ack(delivery.delivery_tag)
        if inserted:
            logger.info(
                "Audit log saved for event: %s (%s %s)",
                envelope.event_type.value,
                envelope.entity_type,
                envelope.entity_id,
            )
        else:
            logger.info("Duplicate event %s ignored", envelope.event_id)
        if offloaded:
            self._discard_snapshots(envelope)

    def _rehydrate(self, envelope: EventEnvelope) -> EventEnvelope:
        if not envelope.snapshots_offloaded:
            return envelope
        if self._snapshots is None:
            logger.error("Event %s has offloaded snapshots but no snapshot store is configured", envelope.event_id)
            return self._mark_missing(envelope)
        try:
            before, after = self._snapshots.get(envelope.event_id)
        except SideChannelUnavailable as e:
            raise PersistenceFailure(f"snapshots for {envelope.event_id} not readable: {e}") from e
        if before is None and after is None:
            logger.error("Snapshots for %s expired before the event was stored", envelope.event_id)
            return self._mark_missing(envelope)
        return envelope.with_snapshots(before, after)

    @staticmethod
    def _mark_missing(envelope: EventEnvelope) -> EventEnvelope:
        return replace(envelope, metadata={**envelope.metadata, "snapshotsMissing": True})

    def _discard_snapshots(self, envelope: EventEnvelope) -> None:
        if self._snapshots is None:
            return
        try:
            self._snapshots.delete(envelope.event_id)
        except SideChannelUnavailable as e:
            logger.warning("Snapshots for %s not deleted: %s", envelope.event_id, e)
