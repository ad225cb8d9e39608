"""
Top-level configuration for the monitoring engine.
"""

from dataclasses import dataclass, field

from src.alerts.models import SWEEP_INTERVAL_SECONDS
from src.anomaly.detector import RUN_INTERVAL_SECONDS
from src.breach.models import FIRST_RUN_DELAY_SECONDS
from src.core.models import DatabaseConfig, KafkaConfig, NotificationConfig, RedisConfig


@dataclass
class EngineConfig:
    """Everything needed to build and run a MonitoringEngine"""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    # Component intervals
    anomaly_interval_seconds: float = RUN_INTERVAL_SECONDS
    alert_sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    breach_first_run_delay_seconds: float = FIRST_RUN_DELAY_SECONDS

    # Feature toggles
    enable_kafka: bool = True
    enable_redis: bool = True
