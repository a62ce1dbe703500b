from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import os

from workforce_audit.contracts import topology
from workforce_audit.core.errors import ConfigError


DEFAULT_SETTINGS_PATH = Path("config/settings.yaml")
EXCHANGE_TYPES = {"topic", "direct", "fanout", "headers"}


@dataclass(frozen=True)
class BrokerSettings:
    host: str = "localhost"
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    virtual_host: str = "/"
    exchange_name: str = topology.DEFAULT_EXCHANGE
    exchange_type: str = topology.EXCHANGE_TYPE_TOPIC
    queue_name: str = topology.DEFAULT_AUDIT_QUEUE
    routing_keys: Tuple[str, ...] = (topology.ALL_EVENTS_PATTERN,)
    prefetch_count: int = 10
    heartbeat_seconds: int = 60
    dead_letter_exchange: Optional[str] = None
    enabled: bool = True


@dataclass(frozen=True)
class StoreSettings:
    mongo_url: str = "mongodb://localhost:27017"
    database: str = "workforce_db"
    collection: str = topology.AUDIT_COLLECTION


@dataclass(frozen=True)
class RedisSettings:
    url: str = "redis://localhost:6379/0"
    enabled: bool = True
    snapshot_ttl_seconds: int = 24 * 3600
    outbox_key: str = "audit:outbox"


@dataclass(frozen=True)
class WorkerSettings:
    startup_max_attempts: int = 10
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    retry_delay_seconds: float = 0.5
    health_port: int = 8081


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    log_level: str = "INFO"
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    redis: RedisSettings = field(default_factory=RedisSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)


def _to_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _to_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _to_keys(name: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        keys = tuple(k.strip() for k in value.split(",") if k.strip())
    elif isinstance(value, (list, tuple)):
        keys = tuple(str(k).strip() for k in value if str(k).strip())
    else:
        raise ConfigError(f"{name} must be a list or comma separated string")
    if not keys:
        raise ConfigError(f"{name} must not be empty")
    return keys


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}

    # Keep imports optional at module import time (tests/tools may not need YAML).
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "PyYAML is required to load config/settings.yaml. Install with: pip install pyyaml"
        ) from e

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


# (section, key, env var)
_ENV_OVERRIDES = [
    ("rabbitmq", "host", "WORKFORCE_RABBITMQ_HOST"),
    ("rabbitmq", "port", "WORKFORCE_RABBITMQ_PORT"),
    ("rabbitmq", "username", "WORKFORCE_RABBITMQ_USERNAME"),
    ("rabbitmq", "password", "WORKFORCE_RABBITMQ_PASSWORD"),
    ("rabbitmq", "virtual_host", "WORKFORCE_RABBITMQ_VHOST"),
    ("rabbitmq", "exchange_name", "WORKFORCE_RABBITMQ_EXCHANGE"),
    ("rabbitmq", "exchange_type", "WORKFORCE_RABBITMQ_EXCHANGE_TYPE"),
    ("rabbitmq", "queue_name", "WORKFORCE_RABBITMQ_QUEUE"),
    ("rabbitmq", "routing_keys", "WORKFORCE_RABBITMQ_ROUTING_KEYS"),
    ("rabbitmq", "prefetch_count", "WORKFORCE_RABBITMQ_PREFETCH"),
    ("rabbitmq", "dead_letter_exchange", "WORKFORCE_RABBITMQ_DEAD_LETTER_EXCHANGE"),
    ("rabbitmq", "enabled", "WORKFORCE_RABBITMQ_ENABLED"),
    ("mongo", "url", "WORKFORCE_MONGO_URL"),
    ("mongo", "database", "WORKFORCE_MONGO_DATABASE"),
    ("mongo", "collection", "WORKFORCE_MONGO_COLLECTION"),
    ("redis", "url", "WORKFORCE_REDIS_URL"),
    ("redis", "enabled", "WORKFORCE_REDIS_ENABLED"),
    ("redis", "snapshot_ttl_seconds", "WORKFORCE_REDIS_SNAPSHOT_TTL_SECONDS"),
    ("worker", "startup_max_attempts", "WORKFORCE_WORKER_STARTUP_MAX_ATTEMPTS"),
    ("worker", "backoff_initial_seconds", "WORKFORCE_WORKER_BACKOFF_INITIAL_SECONDS"),
    ("worker", "backoff_max_seconds", "WORKFORCE_WORKER_BACKOFF_MAX_SECONDS"),
    ("worker", "retry_delay_seconds", "WORKFORCE_WORKER_RETRY_DELAY_SECONDS"),
    ("worker", "health_port", "WORKFORCE_WORKER_HEALTH_PORT"),
]


def _apply_env(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
    for section, key, var in _ENV_OVERRIDES:
        value = environ.get(var)
        if value is None or value == "":
            continue
        merged.setdefault(section, {})[key] = value
    if environ.get("WORKFORCE_ENV"):
        merged["env"] = environ["WORKFORCE_ENV"]
    if environ.get("WORKFORCE_LOG_LEVEL"):
        merged["log_level"] = environ["WORKFORCE_LOG_LEVEL"]
    return merged


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"settings section {name!r} must be a mapping")
    return section


def build_settings(data: Dict[str, Any]) -> Settings:
    rmq = _section(data, "rabbitmq")
    mongo = _section(data, "mongo")
    redis_section = _section(data, "redis")
    worker = _section(data, "worker")

    d_broker = BrokerSettings()
    broker = BrokerSettings(
        host=str(rmq.get("host", d_broker.host)),
        port=_to_int("rabbitmq.port", rmq.get("port", d_broker.port)),
        username=str(rmq.get("username", d_broker.username)),
        password=str(rmq.get("password", d_broker.password)),
        virtual_host=str(rmq.get("virtual_host", d_broker.virtual_host)),
        exchange_name=str(rmq.get("exchange_name", d_broker.exchange_name)),
        exchange_type=str(rmq.get("exchange_type", d_broker.exchange_type)),
        queue_name=str(rmq.get("queue_name", d_broker.queue_name)),
        routing_keys=_to_keys("rabbitmq.routing_keys", rmq.get("routing_keys", d_broker.routing_keys)),
        prefetch_count=_to_int("rabbitmq.prefetch_count", rmq.get("prefetch_count", d_broker.prefetch_count)),
        heartbeat_seconds=_to_int(
            "rabbitmq.heartbeat_seconds", rmq.get("heartbeat_seconds", d_broker.heartbeat_seconds)
        ),
        dead_letter_exchange=rmq.get("dead_letter_exchange") or None,
        enabled=_to_bool("rabbitmq.enabled", rmq.get("enabled", d_broker.enabled)),
    )
    if not 0 < broker.port < 65536:
        raise ConfigError(f"rabbitmq.port out of range: {broker.port}")
    if broker.exchange_type not in EXCHANGE_TYPES:
        raise ConfigError(f"rabbitmq.exchange_type must be one of {sorted(EXCHANGE_TYPES)}")
    if broker.prefetch_count < 1:
        raise ConfigError("rabbitmq.prefetch_count must be >= 1")
    if not broker.exchange_name.strip() or not broker.queue_name.strip():
        raise ConfigError("rabbitmq.exchange_name and rabbitmq.queue_name are required")

    d_store = StoreSettings()
    store = StoreSettings(
        mongo_url=str(mongo.get("url", d_store.mongo_url)),
        database=str(mongo.get("database", d_store.database)),
        collection=str(mongo.get("collection", d_store.collection)),
    )

    d_redis = RedisSettings()
    redis_settings = RedisSettings(
        url=str(redis_section.get("url", d_redis.url)),
        enabled=_to_bool("redis.enabled", redis_section.get("enabled", d_redis.enabled)),
        snapshot_ttl_seconds=_to_int(
            "redis.snapshot_ttl_seconds",
            redis_section.get("snapshot_ttl_seconds", d_redis.snapshot_ttl_seconds),
        ),
        outbox_key=str(redis_section.get("outbox_key", d_redis.outbox_key)),
    )

    d_worker = WorkerSettings()
    worker_settings = WorkerSettings(
        startup_max_attempts=_to_int(
            "worker.startup_max_attempts", worker.get("startup_max_attempts", d_worker.startup_max_attempts)
        ),
        backoff_initial_seconds=_to_float(
            "worker.backoff_initial_seconds",
            worker.get("backoff_initial_seconds", d_worker.backoff_initial_seconds),
        ),
        backoff_max_seconds=_to_float(
            "worker.backoff_max_seconds", worker.get("backoff_max_seconds", d_worker.backoff_max_seconds)
        ),
        retry_delay_seconds=_to_float(
            "worker.retry_delay_seconds", worker.get("retry_delay_seconds", d_worker.retry_delay_seconds)
        ),
        health_port=_to_int("worker.health_port", worker.get("health_port", d_worker.health_port)),
    )
    if worker_settings.startup_max_attempts < 0:
        raise ConfigError("worker.startup_max_attempts must be >= 0 (0 = unlimited)")
    if worker_settings.backoff_initial_seconds <= 0 or (
        worker_settings.backoff_max_seconds < worker_settings.backoff_initial_seconds
    ):
        raise ConfigError("worker backoff must satisfy 0 < initial <= max")

    return Settings(
        env=str(data.get("env", "dev")),
        log_level=str(data.get("log_level", "INFO")).upper(),
        broker=broker,
        store=store,
        redis=redis_settings,
        worker=worker_settings,
    )


def load_settings(
    path: str | Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load YAML settings (optional) and apply WORKFORCE_* environment overrides.

    With no file and no environment the defaults describe a local dev topology
    (RabbitMQ, MongoDB and Redis on localhost).
    """
    env = os.environ if environ is None else environ
    p = Path(path or env.get("WORKFORCE_SETTINGS") or DEFAULT_SETTINGS_PATH)
    data = _apply_env(_read_yaml(p), env)
    return build_settings(data)
