from __future__ import annotations

import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from workforce_audit.contracts.event_types import AuditEventType
from workforce_audit.core.errors import MalformedMessage, UnknownEventType
from workforce_audit.core.models import EventEnvelope


WIRE_REQUIRED_KEYS = {"EventId", "EventType", "Timestamp", "Data"}


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise MalformedMessage(f"missing keys: {sorted(missing)}")
    if extra:
        raise MalformedMessage(f"extra keys not allowed: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise MalformedMessage(f"{k} must be non-empty string")
    return v


def _parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedMessage(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise MalformedMessage("timestamp must include timezone")
    return dt


def validate_wire_dict(message: dict[str, Any]) -> None:
    """Strict validation of a wire message.

    - exactly EventId / EventType / Timestamp / Data
    - EventType must be a known routing key
    - Data must be an object; snapshots inside it are not inspected
    """

    if not isinstance(message, dict):
        raise MalformedMessage("message must be a JSON object")
    _require_exact_keys(message, required=WIRE_REQUIRED_KEYS)
    _require_str(message, "EventId")
    _parse_iso8601(_require_str(message, "Timestamp"))

    key = _require_str(message, "EventType")
    try:
        AuditEventType.from_routing_key(key)
    except UnknownEventType as e:
        raise MalformedMessage(str(e)) from e

    data = message.get("Data")
    if not isinstance(data, dict):
        raise MalformedMessage("Data must be object")
    actor = data.get("actor")
    if actor is not None and not isinstance(actor, str):
        raise MalformedMessage("Data.actor must be string or null")
    if "snapshotsOffloaded" in data and not isinstance(data["snapshotsOffloaded"], bool):
        raise MalformedMessage("Data.snapshotsOffloaded must be boolean")


def envelope_from_wire(message: dict[str, Any]) -> EventEnvelope:
    validate_wire_dict(message)
    return EventEnvelope.from_data(
        event_id=message["EventId"],
        event_type=AuditEventType.from_routing_key(message["EventType"]),
        timestamp=_parse_iso8601(message["Timestamp"]),
        data=message["Data"],
    )


def json_default(value: Any) -> Any:
    # Snapshots come from ORM rows; dates, decimals and UUIDs are common there.
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"value of type {type(value).__name__} is not JSON serializable")


def encode(envelope: EventEnvelope) -> bytes:
    wire = envelope.to_wire()
    validate_wire_dict(wire)
    return json.dumps(wire, ensure_ascii=False, default=json_default).encode("utf-8")


def decode(body: bytes | str) -> EventEnvelope:
    """Parse a UTF-8 JSON body into an envelope, raising MalformedMessage."""
    try:
        text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        message = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"body is not UTF-8 JSON: {e}") from e
    return envelope_from_wire(message)


def validate_many(messages: Iterable[dict[str, Any]]) -> None:
    for m in messages:
        validate_wire_dict(m)
