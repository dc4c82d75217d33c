import os

from msgspec import Struct


def env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


class ServiceConfig(Struct, kw_only=True):
    service_name: str
    kafka_bootstrap_servers: str = "localhost:9092"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0
    topic_partitions: int = 3
    topic_replication_factor: int = 1
    # order service
    correlation_backend: str = "memory"
    correlation_staleness_seconds: float = 300.0
    correlation_sweep_interval_seconds: float = 60.0
    pending_timeout_seconds: float = 900.0
    reconcile_interval_seconds: float = 60.0
    outbox_poll_interval_seconds: float = 0.5
    # inventory service
    product_cache_ttl_seconds: int = 1800
    otel_endpoint: str | None = None

    @classmethod
    def from_env(cls, service_name: str) -> "ServiceConfig":
        return cls(
            service_name=service_name,
            kafka_bootstrap_servers=os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
            redis_host=os.environ.get("REDIS_HOST", "localhost"),
            redis_port=env_int("REDIS_PORT", 6379),
            redis_password=os.environ.get("REDIS_PASSWORD") or None,
            redis_db=env_int("REDIS_DB", 0),
            topic_partitions=env_int("TOPIC_PARTITIONS", 3),
            topic_replication_factor=env_int("TOPIC_REPLICATION_FACTOR", 1),
            correlation_backend=os.environ.get("CORRELATION_BACKEND", "memory"),
            correlation_staleness_seconds=env_float("CORRELATION_STALENESS_SECONDS", 300.0),
            correlation_sweep_interval_seconds=env_float("CORRELATION_SWEEP_INTERVAL_SECONDS", 60.0),
            pending_timeout_seconds=env_float("PENDING_TIMEOUT_SECONDS", 900.0),
            reconcile_interval_seconds=env_float("RECONCILE_INTERVAL_SECONDS", 60.0),
            outbox_poll_interval_seconds=env_float("OUTBOX_POLL_INTERVAL_SECONDS", 0.5),
            product_cache_ttl_seconds=env_int("PRODUCT_CACHE_TTL_SECONDS", 1800),
            otel_endpoint=os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        )
