from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Optional

import uvicorn

from workforce_audit.api.main import create_app
from workforce_audit.audit_store.store import MongoAuditLogStore
from workforce_audit.audit_worker.health import WorkerHealthCheck
from workforce_audit.audit_worker.worker import AuditConsumerWorker
from workforce_audit.core.backoff import Backoff
from workforce_audit.core.broker import PikaBrokerConnection, Subscription
from workforce_audit.core.errors import BrokerUnavailable, ConfigError
from workforce_audit.core.redis_client import redis_from_url
from workforce_audit.core.settings import Settings, load_settings
from workforce_audit.publisher.snapshots import RedisSnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)


def build_worker(s: Settings) -> tuple[AuditConsumerWorker, MongoAuditLogStore]:
    store = MongoAuditLogStore(s.store.mongo_url, s.store.database, s.store.collection)
    snapshots: Optional[SnapshotStore] = None
    if s.redis.enabled:
        snapshots = RedisSnapshotStore(redis_from_url(s.redis.url), ttl_seconds=s.redis.snapshot_ttl_seconds)

    # Consumer side: no publisher confirms, acks are explicit.
    connection = PikaBrokerConnection(s.broker, confirm_delivery=False)
    worker = AuditConsumerWorker(
        connection,
        store,
        subscription=Subscription.from_settings(s.broker),
        snapshots=snapshots,
        backoff=Backoff(
            initial_seconds=s.worker.backoff_initial_seconds,
            maximum_seconds=s.worker.backoff_max_seconds,
        ),
        startup_max_attempts=s.worker.startup_max_attempts,
        retry_delay_seconds=s.worker.retry_delay_seconds,
    )
    return worker, store


def _serve_health(worker: AuditConsumerWorker, store: MongoAuditLogStore, port: int) -> None:
    app = create_app(store, WorkerHealthCheck(store, worker))
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning"))
    # Signal handlers belong to the worker; uvicorn only installs them on the main thread.
    t = threading.Thread(target=server.run, name="audit-health", daemon=True)
    t.start()


def main() -> int:
    try:
        s = load_settings()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", e)
        return 1

    logging.basicConfig(level=getattr(logging, s.log_level, logging.INFO))
    worker, store = build_worker(s)

    def _on_signal(signum, frame) -> None:
        logger.info("Received signal %s, stopping audit worker", signal.Signals(signum).name)
        worker.stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    _serve_health(worker, store, s.worker.health_port)
    logger.info("Audit worker starting (env=%s, queue=%s)", s.env, s.broker.queue_name)
    try:
        worker.run()
    except BrokerUnavailable as e:
        logger.error("Audit worker faulted: %s", e)
        return 1
    finally:
        store.close()
    logger.info("Audit worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
