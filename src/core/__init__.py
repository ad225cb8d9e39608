"""
Core utilities shared across the engine.
"""

from .clock import utcnow
from .database import PostgresConnection
from .errors import ConfigurationReferenceError, MonitoringError, NotFoundError, ValidationError
from .events import EventBus, Topic
from .logger import setup_logging
from .models import DatabaseConfig, KafkaConfig, NotificationConfig, RedisConfig
from .notifications import DispatchingNotificationSink, NotificationSink
from .scheduler import TaskScheduler

__all__ = [
    "ConfigurationReferenceError",
    "DatabaseConfig",
    "DispatchingNotificationSink",
    "EventBus",
    "KafkaConfig",
    "MonitoringError",
    "NotFoundError",
    "NotificationConfig",
    "NotificationSink",
    "PostgresConnection",
    "RedisConfig",
    "TaskScheduler",
    "Topic",
    "ValidationError",
    "setup_logging",
    "utcnow",
]
