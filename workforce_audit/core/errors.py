"""Error taxonomy of the audit pipeline."""

from __future__ import annotations


class AuditPipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(AuditPipelineError, ValueError):
    """Configuration is malformed (unrecoverable at startup)."""


class BrokerUnavailable(AuditPipelineError):
    """Broker connection or channel is absent at publish/subscribe time."""


class MalformedMessage(AuditPipelineError, ValueError):
    """A delivered message cannot be deserialized into an envelope."""


class PersistenceFailure(AuditPipelineError):
    """The audit store rejected or failed a write."""


class UnknownEventType(AuditPipelineError, LookupError):
    """An event type has no routing-key / entity-type mapping."""

    def __init__(self, event_type: object) -> None:
        super().__init__(f"unknown event type: {event_type!r}")
        self.event_type = event_type


class SideChannelUnavailable(AuditPipelineError):
    """The Redis side channel (snapshots / outbox) failed."""
