from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
import uvicorn

from workforce_audit.audit_store.store import AuditLogStore, MongoAuditLogStore
from workforce_audit.audit_worker.health import WorkerHealthCheck
from workforce_audit.core.errors import PersistenceFailure
from workforce_audit.core.models import AuditRecord
from workforce_audit.core.settings import load_settings

logger = logging.getLogger(__name__)

NO_HISTORY_MESSAGE = "No audit history available"


def _items(records: list[AuditRecord]) -> list[dict]:
    return [r.to_dict() for r in records]


def create_app(store: AuditLogStore, health_check: Optional[WorkerHealthCheck] = None) -> FastAPI:
    """Read-only audit log API plus the `worker_health` endpoint."""
    app = FastAPI(title="Workforce Audit API")
    check = health_check or WorkerHealthCheck(store)

    @app.exception_handler(PersistenceFailure)
    def _store_error(request: Request, exc: PersistenceFailure) -> JSONResponse:
        logger.error("Error retrieving audit logs for %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"message": "An error occurred while retrieving audit logs"})

    @app.get("/health")
    def health() -> JSONResponse:
        result = check.check()
        return JSONResponse(status_code=200 if result.healthy else 503, content=result.to_dict(check.name))

    @app.get("/api/auditlogs")
    def list_audit_logs(
        entityType: Optional[str] = None,
        eventType: Optional[str] = None,
        startDate: Optional[datetime] = None,
        endDate: Optional[datetime] = None,
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[dict]:
        return _items(
            store.query(entity_type=entityType, event_type=eventType, start=startDate, end=endDate, limit=limit)
        )

    @app.get("/api/auditlogs/recent")
    def recent(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
        return _items(store.recent(limit))

    @app.get("/api/auditlogs/summary")
    def summary() -> dict:
        counts = store.count_by_entity_type()
        return {"total": sum(counts.values()), "byEntityType": counts}

    @app.get("/api/auditlogs/entity/{entityType}/{entityId}")
    def by_entity(entityType: str, entityId: str) -> dict:
        records = store.query_by_entity(entityType, entityId)
        out: dict = {"entityType": entityType, "entityId": entityId, "items": _items(records)}
        if not records:
            out["message"] = NO_HISTORY_MESSAGE
        return out

    @app.get("/api/auditlogs/event/{eventType}")
    def by_event_type(eventType: str) -> list[dict]:
        return _items(store.query_by_event_type(eventType))

    return app


def main() -> None:
    s = load_settings()
    logging.basicConfig(level=getattr(logging, s.log_level, logging.INFO))
    store = MongoAuditLogStore(s.store.mongo_url, s.store.database, s.store.collection)
    uvicorn.run(create_app(store), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
