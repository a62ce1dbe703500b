from __future__ import annotations

# Broker topology (defaults; all overridable via settings).

DEFAULT_EXCHANGE = "workforce.events"
EXCHANGE_TYPE_TOPIC = "topic"
DEFAULT_AUDIT_QUEUE = "audit.queue"

# Matches every routing key; the audit queue records all events.
ALL_EVENTS_PATTERN = "#"

AUDIT_COLLECTION = "AuditLogs"


def snapshot_key(event_id: str, side: str) -> str:
    if side not in ("before", "after"):
        raise ValueError(f"snapshot side must be before/after, got {side!r}")
    return f"audit:{event_id}:{side}"


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: `*` is exactly one word, `#` is zero or more words."""
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # Try consuming 0..len(words) words.
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False
