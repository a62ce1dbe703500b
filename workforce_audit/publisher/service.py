"""Outbox relay process: drains parked publishes once RabbitMQ is reachable again."""

from __future__ import annotations

import logging
import signal
import sys
import threading

from workforce_audit.core.broker import PikaBrokerConnection
from workforce_audit.core.redis_client import redis_from_url
from workforce_audit.core.settings import load_settings
from workforce_audit.publisher.outbox import OutboxRelay, RedisOutbox

logger = logging.getLogger(__name__)


def main() -> int:
    s = load_settings()
    logging.basicConfig(level=getattr(logging, s.log_level, logging.INFO))
    if not s.redis.enabled:
        logger.error("Outbox relay needs Redis (WORKFORCE_REDIS_ENABLED is false)")
        return 1

    connection = PikaBrokerConnection(s.broker, confirm_delivery=True)
    relay = OutboxRelay(connection, RedisOutbox(redis_from_url(s.redis.url), key=s.redis.outbox_key))
    stop = threading.Event()

    def _on_signal(signum, frame) -> None:
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    logger.info("Outbox relay started for %s", s.redis.outbox_key)
    try:
        relay.run(stop)
    finally:
        connection.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
