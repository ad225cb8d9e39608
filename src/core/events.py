"""
Typed in-process event channel.

Each event is a frozen dataclass carrying its ``topic``. Handlers are async
callables; a failing handler is logged and does not affect the others.
"""

from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

import structlog

logger = structlog.get_logger(__name__)


class Topic(str, Enum):
    # Inputs from external producers
    TOKEN_CREATED = "token.created"
    TOKEN_DENIED = "token.denied"
    TOKEN_USED = "token.used"
    ACCESS_VIOLATION = "ip_access.violation"
    SECURITY_EVENT = "security_event"
    SCANNER_FINDING = "scanner.finding"

    # Both directions
    ANOMALY_DETECTED = "anomaly_detected"

    # Outputs
    METRIC_RECORDED = "metric_recorded"
    ALERT_TRIGGERED = "alert_triggered"
    DASHBOARD_UPDATED = "dashboard_updated"
    HEALTH_CHECK_STATUS_CHANGED = "health_check_status_changed"
    BREACH_DETECTED = "security.breach.detected"


@dataclass(frozen=True)
class Event:
    topic: ClassVar[Topic]

    def to_dict(self) -> dict[str, Any]:
        return {"topic": self.topic.value, **asdict(self)}


@dataclass(frozen=True)
class TokenCreated(Event):
    topic: ClassVar[Topic] = Topic.TOKEN_CREATED

    client_id: str
    ip_address: str | None = None


@dataclass(frozen=True)
class TokenDenied(Event):
    topic: ClassVar[Topic] = Topic.TOKEN_DENIED

    client_id: str
    reason: str
    ip_address: str | None = None


@dataclass(frozen=True)
class TokenUsed(Event):
    topic: ClassVar[Topic] = Topic.TOKEN_USED

    client_id: str
    ip_address: str | None = None
    endpoint: str | None = None


@dataclass(frozen=True)
class AccessViolation(Event):
    topic: ClassVar[Topic] = Topic.ACCESS_VIOLATION

    client_id: str
    ip_address: str
    reason: str = "ip_not_allowed"
    workspace_id: str | None = None


@dataclass(frozen=True)
class SecurityEventOccurred(Event):
    topic: ClassVar[Topic] = Topic.SECURITY_EVENT

    event_type: str
    severity: str = "medium"
    client_id: str | None = None
    workspace_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    event_id: int | None = None


@dataclass(frozen=True)
class ScannerFinding(Event):
    topic: ClassVar[Topic] = Topic.SCANNER_FINDING

    title: str
    severity: str = "medium"
    description: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    workspace_id: str | None = None


@dataclass(frozen=True)
class AnomalyDetected(Event):
    topic: ClassVar[Topic] = Topic.ANOMALY_DETECTED

    metric_name: str
    severity: str
    value: float
    expected_value: float | None = None
    score: float | None = None
    subject: str | None = None
    anomaly_id: int | None = None
    config_id: int | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class MetricRecorded(Event):
    topic: ClassVar[Topic] = Topic.METRIC_RECORDED

    metric_name: str
    value: float
    bucket: str
    timestamp: datetime
    dimensions: dict[str, str] = field(default_factory=dict)
    subject: str | None = None


@dataclass(frozen=True)
class AlertTriggered(Event):
    topic: ClassVar[Topic] = Topic.ALERT_TRIGGERED

    alert_id: int
    alert_name: str
    history_id: int
    severity: str
    metric_name: str
    condition: str
    threshold: float
    value: float
    message: str
    triggered_at: datetime


@dataclass(frozen=True)
class DashboardUpdated(Event):
    topic: ClassVar[Topic] = Topic.DASHBOARD_UPDATED

    recipients: tuple[str, ...]
    title: str
    body: str
    severity: str


@dataclass(frozen=True)
class HealthCheckStatusChanged(Event):
    topic: ClassVar[Topic] = Topic.HEALTH_CHECK_STATUS_CHANGED

    check_id: int
    check_name: str
    transition: str  # 'failure' or 'recovery'
    severity: str
    consecutive_failures: int
    timestamp: datetime
    downtime_seconds: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class BreachDetected(Event):
    topic: ClassVar[Topic] = Topic.BREACH_DETECTED

    breach_id: int
    title: str
    severity: str
    detection_type: str
    source: str
    workspace_id: str | None = None


Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process publish/subscribe with per-handler isolation"""

    def __init__(self):
        self._handlers: dict[Topic, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: Topic, handler: Handler) -> None:
        if handler not in self._handlers[topic]:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: Topic, handler: Handler) -> None:
        if handler in self._handlers[topic]:
            self._handlers[topic].remove(handler)

    def handler_count(self, topic: Topic) -> int:
        return len(self._handlers[topic])

    async def publish(self, event: Event) -> int:
        """Deliver an event to every subscriber; returns the number of successful deliveries"""
        delivered = 0
        for handler in list(self._handlers[event.topic]):
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    topic=event.topic.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )
        return delivered
