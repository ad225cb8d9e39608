"""
Connection settings shared by every component.
"""

from dataclasses import dataclass


@dataclass
class DatabaseConfig:
    """PostgreSQL settings"""

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "secops_db"
    postgres_user: str = "secops"
    postgres_password: str = "secops_password"
    min_connections: int = 1
    max_connections: int = 5


@dataclass
class RedisConfig:
    """Redis settings for the baseline cache"""

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    cache_ttl_seconds: int = 3600


@dataclass
class KafkaConfig:
    """Kafka settings for the event intake consumer"""

    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "security-events"
    kafka_group_id: str = "secops-intake-group"
    kafka_auto_offset_reset: str = "latest"  # 'earliest' or 'latest'
    max_poll_records: int = 500
    poll_timeout_ms: int = 1000


@dataclass
class NotificationConfig:
    """Outbound notification settings"""

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str = "secops@localhost"
    webhook_timeout_seconds: float = 10.0
