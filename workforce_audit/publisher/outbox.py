"""Publish outbox.

When the broker is unreachable the publisher can park serialized messages here
instead of failing the business operation. `OutboxRelay` drains them in FIFO
order once the broker is back; while anything is parked, new messages queue
behind it so publish order is preserved.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Protocol

from redis.exceptions import RedisError

from workforce_audit.core.broker import BrokerConnection
from workforce_audit.core.errors import BrokerUnavailable, SideChannelUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxEntry:
    event_id: str
    routing_key: str
    body: bytes

    def to_json(self) -> str:
        return json.dumps(
            {"event_id": self.event_id, "routing_key": self.routing_key, "body": self.body.decode("utf-8")},
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "OutboxEntry":
        d = json.loads(raw)
        return cls(event_id=d["event_id"], routing_key=d["routing_key"], body=d["body"].encode("utf-8"))


class Outbox(Protocol):
    def append(self, entry: OutboxEntry) -> None:
        ...

    def peek(self, limit: int) -> list[OutboxEntry]:
        """Oldest entries first, without removing them."""
        ...

    def remove_head(self) -> None:
        """Drop the oldest entry (after it was sent)."""
        ...

    def __len__(self) -> int:
        ...


class InMemoryOutbox:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Deque[OutboxEntry] = deque()

    def append(self, entry: OutboxEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def peek(self, limit: int) -> list[OutboxEntry]:
        with self._lock:
            return list(self._entries)[:limit]

    def remove_head(self) -> None:
        with self._lock:
            if self._entries:
                self._entries.popleft()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisOutbox:
    """Redis list: RPUSH to append, LRANGE/LPOP to drain."""

    def __init__(self, redis_client, *, key: str = "audit:outbox") -> None:
        self._client = redis_client
        self._key = key

    def append(self, entry: OutboxEntry) -> None:
        try:
            self._client.rpush(self._key, entry.to_json())
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot park event {entry.event_id} in outbox: {e}") from e

    def peek(self, limit: int) -> list[OutboxEntry]:
        try:
            raw = self._client.lrange(self._key, 0, limit - 1)
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot read outbox: {e}") from e
        return [OutboxEntry.from_json(r) for r in raw]

    def remove_head(self) -> None:
        try:
            self._client.lpop(self._key)
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot trim outbox: {e}") from e

    def __len__(self) -> int:
        try:
            return int(self._client.llen(self._key))
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot read outbox length: {e}") from e


class OutboxRelay:
    """Sends parked messages through the publisher's broker connection."""

    def __init__(self, connection: BrokerConnection, outbox: Outbox, *, batch_size: int = 100) -> None:
        self._connection = connection
        self._outbox = outbox
        self._batch_size = batch_size

    def flush(self) -> int:
        """Send pending entries oldest first; stop at the first broker failure."""
        sent = 0
        while True:
            batch = self._outbox.peek(self._batch_size)
            if not batch:
                break
            for entry in batch:
                try:
                    self._connection.publish(entry.routing_key, entry.body, message_id=entry.event_id)
                except BrokerUnavailable as e:
                    logger.warning("Outbox relay paused, %d pending: %s", len(self._outbox), e)
                    return sent
                # A crash between publish and remove resends the entry; consumers dedupe on eventId.
                self._outbox.remove_head()
                sent += 1
        if sent:
            logger.info("Outbox relay sent %d parked events", sent)
        return sent

    def run(self, stop: threading.Event, *, interval_seconds: float = 5.0) -> None:
        while not stop.wait(interval_seconds):
            try:
                self.flush()
            except SideChannelUnavailable as e:
                logger.error("Outbox relay cannot reach the outbox: %s", e)
