"""Event publisher - embedded in the transactional service.

Turns a domain change into an `EventEnvelope` and sends it to the durable topic
exchange with the event's routing key. The call is synchronous: it returns the
event id once the broker has accepted the message (publisher confirms), not once
the audit record exists.

Payload convention (`data`), all keys optional:

    entityId | <EntityType>Id | <entityType>Id | Id | id   affected entity
    actor                                                    initiator, None for system events
    before / after                                           opaque entity snapshots
    anything else                                            kept as record metadata

Broker outages raise `BrokerUnavailable` unless an outbox is configured, in
which case the message is parked and relayed later.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from workforce_audit.contracts.event_types import AuditEventType, resolve, routing_key
from workforce_audit.contracts.validation import encode
from workforce_audit.core.broker import BrokerConnection, PikaBrokerConnection
from workforce_audit.core.errors import BrokerUnavailable, SideChannelUnavailable
from workforce_audit.core.ids import new_event_id
from workforce_audit.core.models import EventEnvelope, process_clock
from workforce_audit.core.redis_client import redis_from_url
from workforce_audit.core.settings import Settings
from workforce_audit.publisher.outbox import InMemoryOutbox, Outbox, OutboxEntry, OutboxRelay, RedisOutbox
from workforce_audit.publisher.snapshots import RedisSnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        connection: BrokerConnection,
        *,
        outbox: Optional[Outbox] = None,
        snapshots: Optional[SnapshotStore] = None,
        clock: Callable[[], datetime] = process_clock,
        id_factory: Callable[[], str] = new_event_id,
        enabled: bool = True,
    ) -> None:
        self._connection = connection
        self._enabled = enabled
        self._outbox = outbox
        self._relay = OutboxRelay(connection, outbox) if outbox is not None else None
        self._snapshots = snapshots
        self._clock = clock
        self._new_id = id_factory

    def build_envelope(
        self,
        event_type: AuditEventType | str,
        data: Optional[Mapping[str, Any]] = None,
        *,
        event_id: Optional[str] = None,
    ) -> EventEnvelope:
        et = resolve(event_type)
        return EventEnvelope.from_data(
            event_id=event_id or self._new_id(),
            event_type=et,
            timestamp=self._clock(),
            data=dict(data or {}),
        )

    def publish(
        self,
        event_type: AuditEventType | str,
        data: Optional[Mapping[str, Any]] = None,
        *,
        event_id: Optional[str] = None,
    ) -> str:
        """Publish one event and return its id.

        Raises UnknownEventType for an unmapped type (before anything is sent)
        and BrokerUnavailable when the broker cannot take the message and no
        outbox is configured.
        """
        envelope = self.build_envelope(event_type, data, event_id=event_id)
        key = routing_key(envelope.event_type)
        if not self._enabled:
            logger.debug("Event publishing disabled, dropping %s (%s)", envelope.event_id, key)
            return envelope.event_id

        wire_envelope = self._offload_snapshots(envelope)
        body = encode(wire_envelope)

        if self._outbox_pending():
            self._drain_outbox()
        if self._outbox_pending():
            try:
                self._park(envelope, key, body, reason="outbox not yet drained")
                return envelope.event_id
            except SideChannelUnavailable as e:
                logger.warning("Outbox unavailable, publishing %s directly: %s", envelope.event_id, e)

        try:
            self._connection.publish(key, body, message_id=envelope.event_id)
        except BrokerUnavailable as e:
            if self._outbox is None:
                logger.error("Failed to publish %s (%s) with ID %s: %s", envelope.event_type.value, key, envelope.event_id, e)
                raise
            try:
                self._park(envelope, key, body, reason=str(e))
            except SideChannelUnavailable as parked_error:
                logger.error("Outbox unavailable for event %s: %s", envelope.event_id, parked_error)
                raise e from parked_error
            return envelope.event_id

        logger.debug("Published event %s (%s) with ID %s", envelope.event_type.value, key, envelope.event_id)
        return envelope.event_id

    def _offload_snapshots(self, envelope: EventEnvelope) -> EventEnvelope:
        if self._snapshots is None or (envelope.before is None and envelope.after is None):
            return envelope
        try:
            self._snapshots.put(envelope.event_id, before=envelope.before, after=envelope.after)
        except SideChannelUnavailable as e:
            logger.warning("Snapshot store unavailable, sending snapshots inline for %s: %s", envelope.event_id, e)
            return envelope
        return envelope.without_snapshots()

    def _outbox_pending(self) -> bool:
        if self._outbox is None:
            return False
        try:
            return len(self._outbox) > 0
        except SideChannelUnavailable as e:
            logger.warning("Cannot check outbox, publishing directly: %s", e)
            return False

    def _drain_outbox(self) -> None:
        # Parked events go out first so publish order is kept.
        if self._relay is None:
            return
        try:
            self._relay.flush()
        except SideChannelUnavailable as e:
            logger.warning("Cannot drain outbox: %s", e)

    def _park(self, envelope: EventEnvelope, key: str, body: bytes, *, reason: str) -> None:
        outbox = self._outbox
        if outbox is None:
            raise RuntimeError("no outbox configured")
        outbox.append(OutboxEntry(event_id=envelope.event_id, routing_key=key, body=body))
        logger.warning("Parked event %s (%s) in outbox: %s", envelope.event_id, key, reason)

    def close(self) -> None:
        self._connection.close()


def create_publisher(
    settings: Settings,
    *,
    use_outbox: bool = False,
    connection: Optional[BrokerConnection] = None,
) -> EventPublisher:
    """Wire a publisher from settings: RabbitMQ with confirms, Redis side channel if enabled.

    Parked events are drained by the next successful `publish`; with Redis the
    outbox relay process drains them too.
    """
    if connection is None:
        connection = PikaBrokerConnection(settings.broker, confirm_delivery=True)
    snapshots: Optional[SnapshotStore] = None
    outbox: Optional[Outbox] = None
    if settings.redis.enabled:
        client = redis_from_url(settings.redis.url)
        snapshots = RedisSnapshotStore(client, ttl_seconds=settings.redis.snapshot_ttl_seconds)
        if use_outbox:
            outbox = RedisOutbox(client, key=settings.redis.outbox_key)
    elif use_outbox:
        outbox = InMemoryOutbox()
    return EventPublisher(connection, outbox=outbox, snapshots=snapshots, enabled=settings.broker.enabled)
