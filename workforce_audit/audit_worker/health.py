from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from workforce_audit.audit_store.store import AuditLogStore
from workforce_audit.audit_worker.worker import AuditConsumerWorker


@dataclass(frozen=True)
class HealthCheckResult:
    healthy: bool
    description: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, name: str) -> dict[str, Any]:
        return {
            "name": name,
            "status": "Healthy" if self.healthy else "Unhealthy",
            "description": self.description,
            "data": dict(self.data),
        }


class WorkerHealthCheck:
    """`worker_health`: the worker is consuming and the audit store answers a ping.

    Without a worker (the query API process) only the store is checked.
    """

    name = "worker_health"

    def __init__(self, store: AuditLogStore, worker: Optional[AuditConsumerWorker] = None) -> None:
        self._store = store
        self._worker = worker

    def check(self) -> HealthCheckResult:
        data: dict[str, Any] = {}
        if self._worker is not None:
            state = self._worker.state
            data["worker_state"] = state.value
            if not self._worker.healthy:
                return HealthCheckResult(False, f"Audit worker is {state.value}", data)

        if not self._store.ping():
            return HealthCheckResult(False, "MongoDB connection failed", data)
        return HealthCheckResult(True, "MongoDB connection is healthy", data)
