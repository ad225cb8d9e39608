"""
Data models for threshold alerts and their trigger history.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from src.core.comparison import Operator, parse_operator
from src.core.errors import ValidationError
from src.metrics.models import Bucket, MetricPoint

# A new trigger is suppressed while an unresolved row younger than this exists
TRIGGER_DEDUP_MINUTES = 15
SWEEP_INTERVAL_SECONDS = 300

SEVERITIES = ("info", "low", "medium", "high", "critical")


class Channel(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    DASHBOARD = "dashboard"


@dataclass
class AlertDefinition:
    """Threshold rule evaluated against one metric"""

    name: str
    metric_name: str
    condition: Operator
    threshold: float
    duration_seconds: int = 0
    severity: str = "medium"
    enabled: bool = True
    notification_channels: list[Channel] = field(default_factory=list)
    notify_users: list[str] = field(default_factory=list)
    dimensions: dict[str, str] = field(default_factory=dict)
    subject: str | None = None
    webhook_url: str | None = None
    bucket: Bucket = Bucket.MINUTE
    description: str | None = None
    last_triggered_at: datetime | None = None
    id: int | None = None

    @property
    def is_sustained(self) -> bool:
        return self.duration_seconds > 0

    def applies_to(self, point: MetricPoint) -> bool:
        """Instant-path match: same metric, same subject (if set), dimension subset"""
        if point.metric_name != self.metric_name:
            return False
        if self.subject is not None and point.subject != self.subject:
            return False
        return point.matches(self.dimensions)

    def validate(self) -> "AlertDefinition":
        if not self.name:
            raise ValidationError("name is required")
        if not self.metric_name:
            raise ValidationError("metric_name is required")
        self.condition = parse_operator(self.condition)
        try:
            self.threshold = float(self.threshold)
        except (TypeError, ValueError):
            raise ValidationError("threshold must be numeric") from None
        if not isinstance(self.duration_seconds, int) or self.duration_seconds < 0:
            raise ValidationError("duration_seconds must be a non-negative integer")
        if self.severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of {', '.join(SEVERITIES)}")
        try:
            self.notification_channels = [Channel(c) for c in self.notification_channels]
            self.bucket = Bucket(self.bucket)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        if Channel.WEBHOOK in self.notification_channels and not self.webhook_url:
            raise ValidationError("webhook_url is required for the webhook channel")
        if not isinstance(self.dimensions, dict):
            raise ValidationError("dimensions must be a mapping")
        self.dimensions = {str(k): str(v) for k, v in self.dimensions.items()}
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertDefinition":
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValidationError(f"Unknown alert fields: {sorted(unknown)}")
        missing = {"name", "metric_name", "condition", "threshold"} - set(data)
        if missing:
            raise ValidationError(f"Missing alert fields: {sorted(missing)}")
        return cls(**data).validate()

    def to_db_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "metric_name": self.metric_name,
            "condition": Operator(self.condition).value,
            "threshold": self.threshold,
            "duration": self.duration_seconds,
            "severity": self.severity,
            "enabled": self.enabled,
            "notification_channels": [Channel(c).value for c in self.notification_channels],
            "notify_users": list(self.notify_users),
            "dimensions": dict(self.dimensions),
            "client_id": self.subject,
            "webhook_url": self.webhook_url,
            "time_interval": Bucket(self.bucket).value,
        }

    @classmethod
    def from_row(cls, row: dict) -> "AlertDefinition":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            metric_name=row["metric_name"],
            condition=Operator(row["condition"]),
            threshold=float(row["threshold"]),
            duration_seconds=int(row.get("duration") or 0),
            severity=row["severity"],
            enabled=bool(row["enabled"]),
            notification_channels=[Channel(c) for c in row.get("notification_channels") or []],
            notify_users=list(row.get("notify_users") or []),
            dimensions=row.get("dimensions") or {},
            subject=row.get("client_id"),
            webhook_url=row.get("webhook_url"),
            bucket=Bucket(row.get("time_interval") or Bucket.MINUTE),
            last_triggered_at=row.get("last_triggered_at"),
        )


@dataclass
class AlertHistory:
    """One trigger of an alert definition"""

    alert_id: int
    triggered_at: datetime
    value: float
    message: str
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    notes: str | None = None
    id: int | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_row(cls, row: dict) -> "AlertHistory":
        return cls(
            id=row["id"],
            alert_id=row["alert_id"],
            triggered_at=row["triggered_at"],
            value=float(row["value"]),
            message=row["message"],
            acknowledged_at=row.get("acknowledged_at"),
            acknowledged_by=row.get("acknowledged_by"),
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
            notes=row.get("notes"),
        )
