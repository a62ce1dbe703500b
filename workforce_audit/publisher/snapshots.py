"""Before/after snapshot side channel.

Large entity snapshots may travel outside the broker message: the publisher
stores them under `audit:{eventId}:before|after` and the audit worker reads them
back when the message itself carries none, deleting the keys once the record is
persisted.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from workforce_audit.contracts.topology import snapshot_key
from workforce_audit.contracts.validation import json_default
from workforce_audit.core.errors import SideChannelUnavailable


class SnapshotStore(Protocol):
    def put(self, event_id: str, *, before: Any, after: Any) -> None:
        ...

    def get(self, event_id: str) -> Tuple[Any, Any]:
        """Returns (before, after); a missing side is None."""
        ...

    def delete(self, event_id: str) -> None:
        ...


class InMemorySnapshotStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, str] = {}

    def put(self, event_id: str, *, before: Any, after: Any) -> None:
        with self._lock:
            for side, value in (("before", before), ("after", after)):
                if value is not None:
                    self._data[snapshot_key(event_id, side)] = json.dumps(value, default=json_default)

    def get(self, event_id: str) -> Tuple[Any, Any]:
        with self._lock:
            before = self._data.get(snapshot_key(event_id, "before"))
            after = self._data.get(snapshot_key(event_id, "after"))
        return (
            json.loads(before) if before is not None else None,
            json.loads(after) if after is not None else None,
        )

    def delete(self, event_id: str) -> None:
        with self._lock:
            for side in ("before", "after"):
                self._data.pop(snapshot_key(event_id, side), None)


class RedisSnapshotStore:
    def __init__(self, redis_client, *, ttl_seconds: int) -> None:
        self._client = redis_client
        self._ttl = ttl_seconds

    def put(self, event_id: str, *, before: Any, after: Any) -> None:
        try:
            pipe = self._client.pipeline()
            for side, value in (("before", before), ("after", after)):
                if value is not None:
                    pipe.set(snapshot_key(event_id, side), json.dumps(value, default=json_default), ex=self._ttl)
            pipe.execute()
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot store snapshots for {event_id}: {e}") from e

    def get(self, event_id: str) -> Tuple[Optional[Any], Optional[Any]]:
        try:
            before, after = self._client.mget(snapshot_key(event_id, "before"), snapshot_key(event_id, "after"))
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot read snapshots for {event_id}: {e}") from e
        return (
            json.loads(before) if before is not None else None,
            json.loads(after) if after is not None else None,
        )

    def delete(self, event_id: str) -> None:
        try:
            self._client.delete(snapshot_key(event_id, "before"), snapshot_key(event_id, "after"))
        except RedisError as e:
            raise SideChannelUnavailable(f"cannot delete snapshots for {event_id}: {e}") from e
