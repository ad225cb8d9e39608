"""
Data models for health check definitions, results and summaries.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from src.core.errors import ValidationError

DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_TIMEOUT_SECONDS = 5.0
SUMMARY_WINDOW_HOURS = 24


class CheckType(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    SCRIPT = "script"
    DATABASE = "database"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass
class HealthCheckDefinition:
    """A probe run on its own schedule"""

    name: str
    check_type: CheckType
    target: str
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    expected_status: str | None = None
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    script: str | None = None
    enabled: bool = True
    alert_threshold: int = 3
    alert_severity: str = "high"
    workspace_id: str | None = None
    id: int | None = None

    def validate(self) -> "HealthCheckDefinition":
        if not self.name:
            raise ValidationError("name is required")
        try:
            self.check_type = CheckType(self.check_type)
        except ValueError:
            available = ", ".join(t.value for t in CheckType)
            raise ValidationError(f"Unknown check type '{self.check_type}'. Available: {available}") from None
        if not self.target and self.check_type not in (CheckType.DATABASE, CheckType.SCRIPT):
            raise ValidationError("target is required")
        if self.check_type is CheckType.TCP and ":" not in (self.target or ""):
            raise ValidationError("tcp target must be host:port")
        if self.check_type is CheckType.SCRIPT and not (self.script or self.target):
            raise ValidationError("script checks need a command")
        if not isinstance(self.interval_seconds, int) or self.interval_seconds < 1:
            raise ValidationError("interval_seconds must be a positive integer")
        if not isinstance(self.timeout_seconds, int | float) or self.timeout_seconds <= 0:
            raise ValidationError("timeout_seconds must be positive")
        if not isinstance(self.alert_threshold, int) or self.alert_threshold < 1:
            raise ValidationError("alert_threshold must be at least 1")
        if not isinstance(self.headers, dict):
            raise ValidationError("headers must be a mapping")
        self.method = (self.method or "GET").upper()
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthCheckDefinition":
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValidationError(f"Unknown health check fields: {sorted(unknown)}")
        missing = {"name", "check_type"} - set(data)
        if missing:
            raise ValidationError(f"Missing health check fields: {sorted(missing)}")
        data = {"target": "", **data}
        return cls(**data).validate()

    def to_db_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": CheckType(self.check_type).value,
            "target": self.target,
            "interval": self.interval_seconds,
            "timeout": self.timeout_seconds,
            "expected_status": self.expected_status,
            "method": self.method,
            "headers": dict(self.headers),
            "body": self.body,
            "script": self.script,
            "enabled": self.enabled,
            "alert_threshold": self.alert_threshold,
            "alert_severity": self.alert_severity,
            "workspace_id": self.workspace_id,
        }

    @classmethod
    def from_row(cls, row: dict) -> "HealthCheckDefinition":
        return cls(
            id=row["id"],
            name=row["name"],
            check_type=CheckType(row["type"]),
            target=row["target"],
            interval_seconds=int(row["interval"]),
            timeout_seconds=float(row["timeout"]),
            expected_status=row.get("expected_status"),
            method=row.get("method") or "GET",
            headers=row.get("headers") or {},
            body=row.get("body"),
            script=row.get("script"),
            enabled=bool(row["enabled"]),
            alert_threshold=int(row["alert_threshold"]),
            alert_severity=row["alert_severity"],
            workspace_id=row.get("workspace_id"),
        )


@dataclass
class HealthCheckResult:
    """One probe execution"""

    check_id: int
    timestamp: datetime
    status: Outcome
    response_time_ms: float
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    id: int | None = None

    @property
    def is_failure(self) -> bool:
        return self.status is not Outcome.SUCCESS

    @classmethod
    def from_row(cls, row: dict) -> "HealthCheckResult":
        return cls(
            id=row["id"],
            check_id=row["health_check_id"],
            timestamp=row["timestamp"],
            status=Outcome(row["status"]),
            response_time_ms=float(row["response_time"] or 0),
            status_code=row.get("status_code"),
            response_body=row.get("response_body"),
            error=row.get("error_message"),
        )


@dataclass
class Transition:
    """A failure or recovery detected from the recent result window"""

    kind: str  # 'failure' or 'recovery'
    consecutive_failures: int
    downtime_seconds: float | None = None


def detect_transition(recent: list[HealthCheckResult], threshold: int) -> Transition | None:
    """Inspect up to ``threshold + 1`` results, newest first.

    A failure transition fires once, when the leading run of failures has
    exactly ``threshold`` entries. A recovery fires when a success follows
    ``threshold`` failures; downtime runs from the oldest failure in that
    window to the success.
    """
    if not recent:
        return None

    newest = recent[0]
    if newest.is_failure:
        run = 0
        for result in recent:
            if not result.is_failure:
                break
            run += 1
        if run == threshold:
            return Transition(kind="failure", consecutive_failures=run)
        return None

    prior = recent[1 : threshold + 1]
    if len(prior) == threshold and all(result.is_failure for result in prior):
        downtime = (newest.timestamp - prior[-1].timestamp).total_seconds()
        return Transition(kind="recovery", consecutive_failures=threshold, downtime_seconds=downtime)
    return None


@dataclass
class CheckStats:
    total: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    avg_response_time_ms: float = 0.0

    @property
    def uptime(self) -> float:
        return self.successes / self.total * 100 if self.total else 0.0


@dataclass
class CheckSummary:
    check_id: int
    name: str
    check_type: str
    target: str
    enabled: bool
    interval_seconds: int
    current_status: str
    last_checked: datetime | None
    last_response_time_ms: float | None
    last_status_code: int | None
    last_error: str | None
    stats: CheckStats

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stats"]["uptime"] = self.stats.uptime
        if self.last_checked is not None:
            data["last_checked"] = self.last_checked.isoformat()
        return data


@dataclass
class HealthSummary:
    checks: list[CheckSummary]

    @property
    def overall(self) -> dict[str, Any]:
        # Arithmetic mean of per-check uptimes, not weighted by result count
        return {
            "total": len(self.checks),
            "healthy": sum(1 for c in self.checks if c.current_status == Outcome.SUCCESS.value),
            "unhealthy": sum(
                1
                for c in self.checks
                if c.current_status in (Outcome.FAILURE.value, Outcome.TIMEOUT.value)
            ),
            "unknown": sum(1 for c in self.checks if c.current_status == "unknown"),
            "disabled": sum(1 for c in self.checks if not c.enabled),
            "overall_uptime": sum(c.stats.uptime for c in self.checks) / (len(self.checks) or 1),
        }

    def to_dict(self) -> dict:
        return {"health_checks": [c.to_dict() for c in self.checks], "overall": self.overall}
