"""
Data models for anomaly detection configs and detected anomalies.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from src.core.errors import ValidationError


class Algorithm(str, Enum):
    MAD = "mad"
    ZSCORE = "zscore"
    IQR = "iqr"


class AnomalyStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"


# An anomaly for the same (config, metric, subject) inside this window is a duplicate
DEDUP_WINDOW_HOURS = 1

# Security events of the same subject within +/- this many minutes are linked
EVENT_LINK_WINDOW_MINUTES = 15
EVENT_LINK_LIMIT = 10


@dataclass
class AnomalyDetectionConfig:
    """Drives a periodic detection run for one metric"""

    metric_name: str
    algorithm: Algorithm = Algorithm.MAD
    sensitivity: float = 1.0
    training_window_days: int = 14
    subject: str | None = None
    dimensions: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    name: str | None = None
    last_trained_at: datetime | None = None
    id: int | None = None

    def validate(self) -> "AnomalyDetectionConfig":
        if not self.metric_name or not isinstance(self.metric_name, str):
            raise ValidationError("metric_name is required")
        try:
            self.algorithm = Algorithm(self.algorithm)
        except ValueError:
            available = ", ".join(a.value for a in Algorithm)
            raise ValidationError(
                f"Unknown algorithm '{self.algorithm}'. Available algorithms: {available}"
            ) from None
        if not isinstance(self.sensitivity, int | float) or self.sensitivity <= 0:
            raise ValidationError("sensitivity must be a positive number")
        if not isinstance(self.training_window_days, int) or self.training_window_days < 1:
            raise ValidationError("training_window_days must be a positive integer")
        if not isinstance(self.dimensions, dict):
            raise ValidationError("dimensions must be a mapping")
        self.dimensions = {str(k): str(v) for k, v in self.dimensions.items()}
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnomalyDetectionConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown config fields: {sorted(unknown)}")
        if "metric_name" not in data:
            raise ValidationError("metric_name is required")
        return cls(**data).validate()

    def to_db_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "metric_name": self.metric_name,
            "client_id": self.subject,
            "dimensions": self.dimensions,
            "algorithm": Algorithm(self.algorithm).value,
            "sensitivity": float(self.sensitivity),
            "training_period": self.training_window_days,
            "enabled": self.enabled,
            "last_trained_at": self.last_trained_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "AnomalyDetectionConfig":
        return cls(
            id=row["id"],
            name=row.get("name"),
            metric_name=row["metric_name"],
            subject=row.get("client_id"),
            dimensions=row.get("dimensions") or {},
            algorithm=Algorithm(row["algorithm"]),
            sensitivity=float(row["sensitivity"]),
            training_window_days=int(row["training_period"]),
            enabled=bool(row["enabled"]),
            last_trained_at=row.get("last_trained_at"),
        )


@dataclass
class Anomaly:
    """A scored outlier produced by a detection run"""

    config_id: int
    metric_name: str
    timestamp: datetime
    value: float
    expected_value: float
    deviation: float
    score: float
    severity: str
    subject: str | None = None
    status: AnomalyStatus = AnomalyStatus.OPEN
    linked_event_ids: list[int] = field(default_factory=list)
    id: int | None = None

    def to_db_dict(self) -> dict:
        return {
            "config_id": self.config_id,
            "metric_name": self.metric_name,
            "client_id": self.subject,
            "timestamp": self.timestamp,
            "value": self.value,
            "expected_value": self.expected_value,
            "deviation": self.deviation,
            "score": self.score,
            "severity": self.severity,
            "status": AnomalyStatus(self.status).value,
            "linked_event_ids": list(self.linked_event_ids),
        }

    @classmethod
    def from_row(cls, row: dict) -> "Anomaly":
        return cls(
            id=row["id"],
            config_id=row["config_id"],
            metric_name=row["metric_name"],
            subject=row.get("client_id"),
            timestamp=row["timestamp"],
            value=float(row["value"]),
            expected_value=float(row["expected_value"]),
            deviation=float(row["deviation"]),
            score=float(row["score"]),
            severity=row["severity"],
            status=AnomalyStatus(row["status"]),
            linked_event_ids=list(row.get("linked_event_ids") or []),
        )

    def to_dict(self) -> dict:
        data = self.to_db_dict()
        data["id"] = self.id
        data["timestamp"] = self.timestamp.isoformat()
        return data
