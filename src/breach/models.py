"""
Data models for breach detection rules, cases, case events and indicators.

Rule definitions are typed per rule type and validated when a rule is
written, never parsed ad hoc at evaluation time.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from src.core.comparison import Operator, parse_operator
from src.core.errors import ConfigurationReferenceError, ValidationError
from src.metrics.models import Aggregation, Bucket

DEFAULT_EVALUATION_INTERVAL_MINUTES = 15
DEFAULT_TIME_WINDOW_MINUTES = 60
FIRST_RUN_DELAY_SECONDS = 5
SIMILAR_CASE_WINDOW_HOURS = 24
SIGNATURE_SAMPLE_SIZE = 10
CORRELATION_SAMPLE_SIZE = 5

SEVERITIES = ("low", "medium", "high", "critical")
SEVERITY_RANK = {severity: rank for rank, severity in enumerate(SEVERITIES)}


class RuleType(str, Enum):
    BEHAVIOR = "behavior"
    SIGNATURE = "signature"
    ANOMALY = "anomaly"
    CORRELATION = "correlation"


class BreachStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


ACTIVE_STATUSES = (BreachStatus.OPEN, BreachStatus.INVESTIGATING)


class BreachEventType(str, Enum):
    DETECTION = "detection"
    STATUS_CHANGE = "status-change"
    UPDATE = "update"
    INDICATOR_LINKED = "indicator-linked"
    INDICATOR_UNLINKED = "indicator-unlinked"


class MatchFamily(str, Enum):
    SECURITY_EVENT = "security_event"
    IP_VIOLATION = "ip_violation"
    TOKEN_USAGE = "token_usage"
    ANOMALY = "anomaly"


PATTERN_FIELDS = {
    MatchFamily.SECURITY_EVENT: {"event_type", "severity", "client_id"},
    MatchFamily.IP_VIOLATION: {"client_id", "ip_address"},
    MatchFamily.TOKEN_USAGE: {"client_id", "min_requests", "max_requests"},
    MatchFamily.ANOMALY: {"metric_name", "severity", "min_score"},
}

SIGNATURE_FAMILIES = (MatchFamily.SECURITY_EVENT, MatchFamily.IP_VIOLATION, MatchFamily.TOKEN_USAGE)
CORRELATION_FAMILIES = (MatchFamily.SECURITY_EVENT, MatchFamily.IP_VIOLATION, MatchFamily.ANOMALY)

RULE_SOURCES = {
    RuleType.BEHAVIOR: "behavior-rule",
    RuleType.SIGNATURE: "signature-rule",
    RuleType.ANOMALY: "anomaly-rule",
    RuleType.CORRELATION: "correlation-rule",
}


def _positive_int(data: dict, key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ValidationError(f"{key} must be a positive integer")
    return value


def _family(value: Any, allowed: tuple[MatchFamily, ...]) -> MatchFamily:
    try:
        family = MatchFamily(value)
    except ValueError:
        family = None
    if family not in allowed:
        names = ", ".join(f.value for f in allowed)
        raise ValidationError(f"Unknown match type '{value}'. Expected one of: {names}")
    return family


def _pattern(family: MatchFamily, pattern: Any) -> dict[str, Any]:
    if not isinstance(pattern, dict):
        raise ValidationError("pattern must be a mapping")
    unknown = set(pattern) - PATTERN_FIELDS[family]
    if unknown:
        raise ValidationError(f"Unknown {family.value} pattern fields: {sorted(unknown)}")
    for key in ("min_requests", "max_requests", "min_score"):
        if key in pattern and not isinstance(pattern[key], int | float):
            raise ValidationError(f"{key} must be numeric")
    return dict(pattern)


@dataclass
class MetricSpec:
    name: str
    aggregation: Aggregation = Aggregation.SUM


@dataclass
class BehaviorDefinition:
    """Named metrics over a window, combined directly or through an expression"""

    metrics: list[MetricSpec]
    metric: str | None = None
    expression: str | None = None
    operator: Operator = Operator.GT
    threshold: float = 0.0
    bucket: Bucket = Bucket.HOUR
    time_window: int = DEFAULT_TIME_WINDOW_MINUTES
    evaluation_interval_minutes: int = DEFAULT_EVALUATION_INTERVAL_MINUTES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BehaviorDefinition":
        raw_metrics = data.get("metrics")
        if not raw_metrics or not isinstance(raw_metrics, list):
            raise ValidationError("behavior rules need a non-empty metrics list")
        metrics = []
        for item in raw_metrics:
            if isinstance(item, str):
                item = {"name": item}
            if not isinstance(item, dict) or not item.get("name"):
                raise ValidationError("each metric needs a name")
            try:
                aggregation = Aggregation(item.get("aggregation", Aggregation.SUM))
            except ValueError:
                raise ValidationError(f"Unknown aggregation '{item.get('aggregation')}'") from None
            metrics.append(MetricSpec(name=item["name"], aggregation=aggregation))

        condition = data.get("condition") or {}
        if not isinstance(condition, dict):
            raise ValidationError("condition must be a mapping")
        condition_type = condition.get("type", "simple")
        metric = expression = None
        names = {m.name for m in metrics}
        if condition_type == "simple":
            metric = condition.get("metric", metrics[0].name)
            if metric not in names:
                raise ValidationError(f"condition metric '{metric}' is not in the metrics list")
        elif condition_type == "expression":
            expression = condition.get("expression")
            if not expression or not isinstance(expression, str):
                raise ValidationError("expression conditions need an expression")
            # Imported here to keep models free of evaluator state
            from .expression import validate_expression

            try:
                validate_expression(expression, names)
            except ConfigurationReferenceError as e:
                raise ValidationError(str(e)) from None
        else:
            raise ValidationError(f"Unknown condition type '{condition_type}'")

        try:
            threshold = float(data.get("threshold", 0))
            bucket = Bucket(data.get("bucket", Bucket.HOUR))
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from None

        return cls(
            metrics=metrics,
            metric=metric,
            expression=expression,
            operator=parse_operator(condition.get("operator", data.get("operator", Operator.GT))),
            threshold=threshold,
            bucket=bucket,
            time_window=_positive_int(data, "time_window", DEFAULT_TIME_WINDOW_MINUTES),
            evaluation_interval_minutes=_positive_int(
                data, "evaluation_interval_minutes", DEFAULT_EVALUATION_INTERVAL_MINUTES
            ),
        )


@dataclass
class Signature:
    family: MatchFamily
    pattern: dict[str, Any]
    threshold: int = 1


@dataclass
class SignatureDefinition:
    signatures: list[Signature]
    time_window: int = DEFAULT_TIME_WINDOW_MINUTES
    evaluation_interval_minutes: int = DEFAULT_EVALUATION_INTERVAL_MINUTES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignatureDefinition":
        raw = data.get("signatures")
        if not raw or not isinstance(raw, list):
            raise ValidationError("signature rules need a non-empty signatures list")
        signatures = []
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError("each signature must be a mapping")
            family = _family(item.get("type"), SIGNATURE_FAMILIES)
            signatures.append(
                Signature(
                    family=family,
                    pattern=_pattern(family, item.get("pattern", {})),
                    threshold=_positive_int(item, "threshold", 1),
                )
            )
        return cls(
            signatures=signatures,
            time_window=_positive_int(data, "time_window", DEFAULT_TIME_WINDOW_MINUTES),
            evaluation_interval_minutes=_positive_int(
                data, "evaluation_interval_minutes", DEFAULT_EVALUATION_INTERVAL_MINUTES
            ),
        )


@dataclass
class AnomalyRuleDefinition:
    metrics: list[str] = field(default_factory=list)
    severities: list[str] = field(default_factory=list)
    time_window: int = DEFAULT_TIME_WINDOW_MINUTES
    evaluation_interval_minutes: int = DEFAULT_EVALUATION_INTERVAL_MINUTES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnomalyRuleDefinition":
        metrics = data.get("metrics", [])
        severities = data.get("severities", [])
        if not isinstance(metrics, list) or not all(isinstance(m, str) for m in metrics):
            raise ValidationError("metrics must be a list of metric names")
        if not isinstance(severities, list) or any(s not in ("low", "medium", "high") for s in severities):
            raise ValidationError("severities must be a list of low, medium or high")
        return cls(
            metrics=list(metrics),
            severities=list(severities),
            time_window=_positive_int(data, "time_window", DEFAULT_TIME_WINDOW_MINUTES),
            evaluation_interval_minutes=_positive_int(
                data, "evaluation_interval_minutes", DEFAULT_EVALUATION_INTERVAL_MINUTES
            ),
        )


@dataclass
class CorrelationCondition:
    family: MatchFamily
    pattern: dict[str, Any]
    threshold: int = 1
    name: str | None = None


@dataclass
class CorrelationDefinition:
    conditions: list[CorrelationCondition]
    threshold: int
    time_window: int = DEFAULT_TIME_WINDOW_MINUTES
    evaluation_interval_minutes: int = DEFAULT_EVALUATION_INTERVAL_MINUTES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CorrelationDefinition":
        raw = data.get("conditions")
        if not raw or not isinstance(raw, list):
            raise ValidationError("correlation rules need a non-empty conditions list")
        conditions = []
        for item in raw:
            if not isinstance(item, dict):
                raise ValidationError("each condition must be a mapping")
            family = _family(item.get("type"), CORRELATION_FAMILIES)
            conditions.append(
                CorrelationCondition(
                    family=family,
                    pattern=_pattern(family, item.get("pattern", {})),
                    threshold=_positive_int(item, "threshold", 1),
                    name=item.get("name"),
                )
            )
        threshold = _positive_int(data, "threshold", len(conditions))
        if threshold > len(conditions):
            raise ValidationError("threshold cannot exceed the number of conditions")
        return cls(
            conditions=conditions,
            threshold=threshold,
            time_window=_positive_int(data, "time_window", DEFAULT_TIME_WINDOW_MINUTES),
            evaluation_interval_minutes=_positive_int(
                data, "evaluation_interval_minutes", DEFAULT_EVALUATION_INTERVAL_MINUTES
            ),
        )


RuleDefinition = BehaviorDefinition | SignatureDefinition | AnomalyRuleDefinition | CorrelationDefinition

DEFINITION_TYPES: dict[RuleType, type] = {
    RuleType.BEHAVIOR: BehaviorDefinition,
    RuleType.SIGNATURE: SignatureDefinition,
    RuleType.ANOMALY: AnomalyRuleDefinition,
    RuleType.CORRELATION: CorrelationDefinition,
}


def parse_definition(rule_type: RuleType, data: dict[str, Any]) -> RuleDefinition:
    if not isinstance(data, dict):
        raise ValidationError("definition must be a mapping")
    return DEFINITION_TYPES[rule_type].from_dict(data)


def definition_to_dict(definition: RuleDefinition) -> dict[str, Any]:
    """Serialize a definition back into the dictionary shape ``parse_definition`` accepts"""
    if isinstance(definition, BehaviorDefinition):
        if definition.expression is not None:
            condition = {"type": "expression", "expression": definition.expression}
        else:
            condition = {"type": "simple", "metric": definition.metric}
        condition["operator"] = definition.operator.value
        return {
            "metrics": [{"name": m.name, "aggregation": m.aggregation.value} for m in definition.metrics],
            "condition": condition,
            "threshold": definition.threshold,
            "bucket": definition.bucket.value,
            "time_window": definition.time_window,
            "evaluation_interval_minutes": definition.evaluation_interval_minutes,
        }
    if isinstance(definition, SignatureDefinition | CorrelationDefinition):
        data = asdict(definition)
        items = "signatures" if isinstance(definition, SignatureDefinition) else "conditions"
        for item in data[items]:
            item["type"] = item.pop("family").value
        return data
    return asdict(definition)


@dataclass
class BreachDetectionRule:
    name: str
    rule_type: RuleType
    definition: RuleDefinition
    severity: str = "medium"
    enabled: bool = True
    workspace_id: str | None = None
    description: str | None = None
    category: str | None = None
    id: int | None = None

    @property
    def is_global(self) -> bool:
        return self.workspace_id is None

    @property
    def interval_seconds(self) -> int:
        return self.definition.evaluation_interval_minutes * 60

    @property
    def time_window(self) -> timedelta:
        return timedelta(minutes=self.definition.time_window)

    @property
    def source(self) -> str:
        return RULE_SOURCES[self.rule_type]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BreachDetectionRule":
        allowed = {"name", "rule_type", "definition", "severity", "enabled",
                   "workspace_id", "description", "category"}
        unknown = set(data) - allowed
        if unknown:
            raise ValidationError(f"Unknown rule fields: {sorted(unknown)}")
        if not data.get("name"):
            raise ValidationError("name is required")
        try:
            rule_type = RuleType(data.get("rule_type"))
        except ValueError:
            raise ValidationError(f"Unknown rule type '{data.get('rule_type')}'") from None
        severity = data.get("severity", "medium")
        if severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of {', '.join(SEVERITIES)}")
        return cls(
            name=data["name"],
            rule_type=rule_type,
            definition=parse_definition(rule_type, data.get("definition")),
            severity=severity,
            enabled=bool(data.get("enabled", True)),
            workspace_id=data.get("workspace_id"),
            description=data.get("description"),
            category=data.get("category"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "rule_type": self.rule_type.value,
            "definition": definition_to_dict(self.definition),
            "severity": self.severity,
            "enabled": self.enabled,
            "workspace_id": self.workspace_id,
            "description": self.description,
            "category": self.category,
        }

    @classmethod
    def from_row(cls, row: dict) -> "BreachDetectionRule":
        rule = cls.from_dict(
            {
                "name": row["name"],
                "rule_type": row["type"],
                "definition": row["definition"],
                "severity": row["severity"],
                "enabled": row["enabled"],
                "workspace_id": row.get("workspace_id"),
                "description": row.get("description"),
                "category": row.get("category"),
            }
        )
        rule.id = row["id"]
        return rule


@dataclass
class Breach:
    """A tracked security case"""

    title: str
    detection_type: str
    severity: str
    source: str
    detected_at: datetime
    description: str = ""
    status: BreachStatus = BreachStatus.OPEN
    first_detected_at: datetime | None = None
    evidence: dict[str, Any] = field(default_factory=dict)
    rule_id: int | None = None
    workspace_id: str | None = None
    assigned_to: str | None = None
    affected_resources: list[str] = field(default_factory=list)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @classmethod
    def from_row(cls, row: dict) -> "Breach":
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description") or "",
            detection_type=row["detection_type"],
            severity=row["severity"],
            status=BreachStatus(row["status"]),
            source=row["source"],
            detected_at=row["detected_at"],
            first_detected_at=row.get("first_detected_at"),
            evidence=row.get("evidence") or {},
            rule_id=row.get("rule_id"),
            workspace_id=row.get("workspace_id"),
            assigned_to=row.get("assigned_to"),
            affected_resources=list(row.get("affected_resources") or []),
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("detected_at", "first_detected_at", "resolved_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class BreachEvent:
    """Append-only audit entry of a case"""

    breach_id: int
    event_type: BreachEventType
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)
    actor: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: dict) -> "BreachEvent":
        return cls(
            id=row["id"],
            breach_id=row["breach_id"],
            event_type=BreachEventType(row["event_type"]),
            timestamp=row["timestamp"],
            details=row.get("details") or {},
            actor=row.get("actor"),
        )


@dataclass
class BreachCandidate:
    """Evidence a detector wants turned into a new case or merged into an existing one"""

    title: str
    detection_type: str
    severity: str
    source: str
    evidence: dict[str, Any]
    description: str = ""
    message: str = "Similar breach detected"
    rule_id: int | None = None
    dedup_window: timedelta | None = None
    workspace_id: str | None = None
    affected_resources: list[str] = field(default_factory=list)


@dataclass
class Indicator:
    indicator_type: str
    value: str
    severity: str = "medium"
    source: str | None = None
    description: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Indicator":
        return cls(
            id=row["id"],
            indicator_type=row["type"],
            value=row["value"],
            severity=row["severity"],
            source=row.get("source"),
            description=row.get("description"),
        )


@dataclass
class IndicatorLink:
    breach_id: int
    indicator_id: int
    confidence: float
    linked_by: str | None = None
    linked_at: datetime | None = None


@dataclass
class BreachFilter:
    workspace_id: str | None = None
    status: BreachStatus | None = None
    severity: str | None = None
    detection_type: str | None = None
    source: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    search: str | None = None


SORT_COLUMNS = {"detected_at": "detected_at", "severity": "severity", "status": "status"}


@dataclass
class BreachPage:
    items: list[Breach]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0
