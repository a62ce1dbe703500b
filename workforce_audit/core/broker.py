"""Broker connection handles.

A `BrokerConnection` is owned by exactly one process-side component (the
publisher or the audit worker) and hides reconnects: every operation reopens the
transport if the previous one was lost, so callers never see the swap. Failures
to reach the broker surface as `BrokerUnavailable`.

Channels are not safe for concurrent use; `PikaBrokerConnection` serializes
publish/setup calls with a lock, and `stop_consuming` is the only method meant
to be called from another thread.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Optional, Protocol, Tuple

from workforce_audit.contracts import topology
from workforce_audit.core.errors import BrokerUnavailable
from workforce_audit.core.settings import BrokerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    delivery_tag: int
    routing_key: str
    body: bytes
    redelivered: bool = False
    message_id: Optional[str] = None


@dataclass(frozen=True)
class Subscription:
    queue: str = topology.DEFAULT_AUDIT_QUEUE
    routing_keys: Tuple[str, ...] = (topology.ALL_EVENTS_PATTERN,)
    prefetch_count: int = 10
    dead_letter_exchange: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: BrokerSettings) -> "Subscription":
        return cls(
            queue=settings.queue_name,
            routing_keys=tuple(settings.routing_keys),
            prefetch_count=settings.prefetch_count,
            dead_letter_exchange=settings.dead_letter_exchange,
        )


class BrokerConnection(Protocol):
    def publish(self, routing_key: str, body: bytes, *, message_id: Optional[str] = None) -> None:
        """Send to the exchange; returns once the broker accepted the message."""
        ...

    def consume(
        self,
        subscription: Subscription,
        on_message: Callable[[Delivery], None],
        on_ready: Optional[Callable[[], None]] = None,
    ) -> None:
        """Declare and bind the queue, then deliver messages until `stop_consuming`.

        `on_ready` runs once the consumer is registered. Raises
        `BrokerUnavailable` on setup failure or when the connection drops.
        """
        ...

    def stop_consuming(self) -> None:
        ...

    def ack(self, delivery_tag: int) -> None:
        ...

    def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        ...

    def close(self) -> None:
        ...


class PikaBrokerConnection:
    """RabbitMQ connection (pika BlockingConnection) with lazy reconnect."""

    def __init__(self, settings: BrokerSettings, *, confirm_delivery: bool = True) -> None:
        self.settings = settings
        self._confirm_delivery = confirm_delivery
        self._connection = None
        self._channel = None
        self._lock = threading.RLock()

    def _parameters(self):
        import pika  # type: ignore

        return pika.ConnectionParameters(
            host=self.settings.host,
            port=self.settings.port,
            virtual_host=self.settings.virtual_host,
            credentials=pika.PlainCredentials(self.settings.username, self.settings.password),
            heartbeat=self.settings.heartbeat_seconds,
            blocked_connection_timeout=30,
            connection_attempts=1,
        )

    def _is_open(self) -> bool:
        return (
            self._connection is not None
            and self._channel is not None
            and self._connection.is_open
            and self._channel.is_open
        )

    def _get_channel(self):
        if self._is_open():
            return self._channel

        import pika  # type: ignore

        self._reset()
        s = self.settings
        try:
            connection = pika.BlockingConnection(self._parameters())
            channel = connection.channel()
            if self._confirm_delivery:
                channel.confirm_delivery()
            # Idempotent: redeclaring with the same arguments is a no-op.
            channel.exchange_declare(exchange=s.exchange_name, exchange_type=s.exchange_type, durable=True)
        except pika.exceptions.AMQPError as e:
            raise BrokerUnavailable(f"cannot connect to RabbitMQ at {s.host}:{s.port}: {e!r}") from e

        self._connection = connection
        self._channel = channel
        logger.info("RabbitMQ connection initialized for exchange: %s", s.exchange_name)
        return channel

    def _reset(self) -> None:
        conn = self._connection
        self._connection = None
        self._channel = None
        if conn is not None and conn.is_open:
            import pika  # type: ignore

            try:
                conn.close()
            except pika.exceptions.AMQPError as e:  # pragma: no cover
                logger.debug("ignoring error while dropping broken connection: %r", e)

    def publish(self, routing_key: str, body: bytes, *, message_id: Optional[str] = None) -> None:
        import pika  # type: ignore

        # A connection dropped while idle only shows up on the next publish.
        stale = (
            pika.exceptions.AMQPConnectionError,
            pika.exceptions.ChannelClosed,
            pika.exceptions.ConnectionWrongStateError,
            pika.exceptions.ChannelWrongStateError,
        )
        props = pika.BasicProperties(
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=2,  # persistent
            message_id=message_id,
        )
        with self._lock:
            for attempt in (1, 2):
                channel = self._get_channel()
                try:
                    channel.basic_publish(
                        exchange=self.settings.exchange_name,
                        routing_key=routing_key,
                        body=body,
                        properties=props,
                    )
                    return
                except pika.exceptions.NackError as e:
                    raise BrokerUnavailable(f"broker refused message {message_id}") from e
                except stale as e:
                    self._reset()
                    if attempt == 2:
                        raise BrokerUnavailable(f"publish failed for {routing_key}: {e!r}") from e
                    logger.info("RabbitMQ connection went stale, reconnecting to publish %s: %r", message_id, e)
                except pika.exceptions.AMQPError as e:
                    self._reset()
                    raise BrokerUnavailable(f"publish failed for {routing_key}: {e!r}") from e

    def consume(
        self,
        subscription: Subscription,
        on_message: Callable[[Delivery], None],
        on_ready: Optional[Callable[[], None]] = None,
    ) -> None:
        import pika  # type: ignore

        def _callback(channel, method, properties, body) -> None:
            on_message(
                Delivery(
                    delivery_tag=method.delivery_tag,
                    routing_key=method.routing_key,
                    body=body,
                    redelivered=bool(method.redelivered),
                    message_id=getattr(properties, "message_id", None),
                )
            )

        with self._lock:
            channel = self._get_channel()
            try:
                arguments = None
                if subscription.dead_letter_exchange:
                    arguments = {"x-dead-letter-exchange": subscription.dead_letter_exchange}
                channel.queue_declare(
                    queue=subscription.queue,
                    durable=True,
                    exclusive=False,
                    auto_delete=False,
                    arguments=arguments,
                )
                for key in subscription.routing_keys:
                    channel.queue_bind(queue=subscription.queue, exchange=self.settings.exchange_name, routing_key=key)
                channel.basic_qos(prefetch_count=subscription.prefetch_count)
                channel.basic_consume(queue=subscription.queue, on_message_callback=_callback, auto_ack=False)
            except pika.exceptions.AMQPError as e:
                self._reset()
                raise BrokerUnavailable(f"cannot subscribe {subscription.queue}: {e!r}") from e

        logger.info("RabbitMQ consumer started for queue: %s", subscription.queue)
        if on_ready is not None:
            on_ready()

        try:
            channel.start_consuming()
        except pika.exceptions.AMQPError as e:
            self._reset()
            raise BrokerUnavailable(f"consumer on {subscription.queue} lost its connection: {e!r}") from e

    def stop_consuming(self) -> None:
        conn, channel = self._connection, self._channel
        if conn is None or channel is None or not conn.is_open:
            return

        import pika  # type: ignore

        try:
            # Runs on the consuming thread once the current callback returns.
            conn.add_callback_threadsafe(channel.stop_consuming)
        except pika.exceptions.AMQPError as e:
            logger.warning("stop_consuming on a broken connection: %r", e)

    def ack(self, delivery_tag: int) -> None:
        import pika  # type: ignore

        try:
            self._channel.basic_ack(delivery_tag=delivery_tag)
        except (AttributeError, pika.exceptions.AMQPError) as e:
            raise BrokerUnavailable(f"cannot ack delivery {delivery_tag}: {e!r}") from e

    def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        import pika  # type: ignore

        try:
            self._channel.basic_nack(delivery_tag=delivery_tag, requeue=requeue)
        except (AttributeError, pika.exceptions.AMQPError) as e:
            raise BrokerUnavailable(f"cannot nack delivery {delivery_tag}: {e!r}") from e

    def close(self) -> None:
        import pika  # type: ignore

        with self._lock:
            conn, channel = self._connection, self._channel
            self._connection = None
            self._channel = None
            try:
                if channel is not None and channel.is_open:
                    channel.close()
                if conn is not None and conn.is_open:
                    conn.close()
            except pika.exceptions.AMQPError as e:
                logger.warning("error while closing RabbitMQ connection: %r", e)
        logger.info("RabbitMQ connection closed")


@dataclass
class _Queue:
    patterns: list[str]
    messages: Deque[Delivery] = field(default_factory=deque)


class InMemoryBroker:
    """In-process topic exchange for tests and local runs.

    Routing follows AMQP topic rules; queues are created on first `consume`
    (or `declare_queue`) and keep messages across consumer restarts, like a
    durable queue. `set_available(False)` simulates an outage: publishes fail
    and an active consumer is disconnected with its unacked messages requeued.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queues: dict[str, _Queue] = {}
        self._unacked: dict[int, tuple[str, Delivery]] = {}
        self._next_tag = 1
        self._available = True
        self._stopping = False
        self._consumer_queue: Optional[str] = None
        self.published: list[tuple[str, bytes]] = []
        self.dead_letters: list[Delivery] = []

    # -- test controls -------------------------------------------------

    def set_available(self, available: bool) -> None:
        with self._cond:
            self._available = available
            self._cond.notify_all()

    def declare_queue(self, subscription: Subscription) -> None:
        with self._cond:
            q = self._queues.setdefault(subscription.queue, _Queue(patterns=[]))
            for key in subscription.routing_keys:
                if key not in q.patterns:
                    q.patterns.append(key)

    def depth(self, queue: str) -> int:
        with self._cond:
            q = self._queues.get(queue)
            return len(q.messages) if q else 0

    # -- BrokerConnection ----------------------------------------------

    def publish(self, routing_key: str, body: bytes, *, message_id: Optional[str] = None) -> None:
        with self._cond:
            if not self._available:
                raise BrokerUnavailable("in-memory broker is unavailable")
            self.published.append((routing_key, body))
            for q in self._queues.values():
                if any(topology.topic_matches(p, routing_key) for p in q.patterns):
                    q.messages.append(
                        Delivery(delivery_tag=0, routing_key=routing_key, body=body, message_id=message_id)
                    )
            self._cond.notify_all()

    def consume(
        self,
        subscription: Subscription,
        on_message: Callable[[Delivery], None],
        on_ready: Optional[Callable[[], None]] = None,
    ) -> None:
        with self._cond:
            if not self._available:
                raise BrokerUnavailable("in-memory broker is unavailable")
        self.declare_queue(subscription)
        with self._cond:
            self._stopping = False
            self._consumer_queue = subscription.queue
        if on_ready is not None:
            on_ready()

        try:
            while True:
                with self._cond:
                    q = self._queues[subscription.queue]
                    while not self._stopping and self._available and not q.messages:
                        self._cond.wait()
                    if self._stopping:
                        return
                    if not self._available:
                        self._requeue_unacked()
                        raise BrokerUnavailable("in-memory broker connection lost")
                    delivery = replace(q.messages.popleft(), delivery_tag=self._next_tag)
                    self._next_tag += 1
                    self._unacked[delivery.delivery_tag] = (subscription.queue, delivery)
                on_message(delivery)
        finally:
            with self._cond:
                self._consumer_queue = None

    def _requeue_unacked(self) -> None:
        for tag in sorted(self._unacked, reverse=True):
            queue, delivery = self._unacked.pop(tag)
            self._queues[queue].messages.appendleft(replace(delivery, redelivered=True))

    def stop_consuming(self) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()

    def ack(self, delivery_tag: int) -> None:
        with self._cond:
            self._unacked.pop(delivery_tag, None)

    def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        with self._cond:
            entry = self._unacked.pop(delivery_tag, None)
            if entry is None:
                return
            queue, delivery = entry
            if requeue:
                self._queues[queue].messages.appendleft(replace(delivery, redelivered=True))
            else:
                self.dead_letters.append(delivery)
            self._cond.notify_all()

    def close(self) -> None:
        # Only a consumer-side close returns unacked messages to their queue.
        with self._cond:
            if self._consumer_queue is None:
                self._requeue_unacked()
                self._cond.notify_all()
