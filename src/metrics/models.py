"""
Data models for metric collection and aggregation.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum


class Bucket(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class Aggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


# Labels sort lexicographically in chronological order
BUCKET_FORMATS = {
    Bucket.MINUTE: "%Y-%m-%d %H:%M",
    Bucket.HOUR: "%Y-%m-%d %H",
    Bucket.DAY: "%Y-%m-%d",
    Bucket.WEEK: "%G-W%V",
    Bucket.MONTH: "%Y-%m",
}


def bucket_label(timestamp: datetime, bucket: Bucket) -> str:
    """Format a timestamp as the label of the bucket containing it"""
    return timestamp.astimezone(UTC).strftime(BUCKET_FORMATS[Bucket(bucket)])


def parse_bucket_label(label: str, bucket: Bucket) -> datetime:
    """Return the UTC start of the bucket named by ``label``"""
    bucket = Bucket(bucket)
    if bucket is Bucket.WEEK:
        parsed = datetime.strptime(f"{label}-1", "%G-W%V-%u")
    else:
        parsed = datetime.strptime(label, BUCKET_FORMATS[bucket])
    return parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class MetricPoint:
    """A single immutable metric observation"""

    metric_name: str
    value: float
    timestamp: datetime
    bucket: Bucket = Bucket.HOUR
    dimensions: dict[str, str] = field(default_factory=dict)
    subject: str | None = None
    metric_type: MetricType = MetricType.GAUGE
    source: str | None = None
    id: int | None = None

    def matches(self, dimensions: dict[str, str] | None) -> bool:
        """True if every requested dimension is present with an equal value"""
        if not dimensions:
            return True
        return all(self.dimensions.get(key) == value for key, value in dimensions.items())

    def to_db_dict(self) -> dict:
        return {
            "metric_name": self.metric_name,
            "metric_type": MetricType(self.metric_type).value,
            "value": float(self.value),
            "timestamp": self.timestamp,
            "time_interval": Bucket(self.bucket).value,
            "dimensions": dict(self.dimensions),
            "client_id": self.subject,
            "source": self.source,
        }


@dataclass
class AggregatedValue:
    """One bucket of an aggregation query"""

    label: str
    value: float
    count: int


class UsageCounter(str, Enum):
    TOKEN_REQUESTS = "token_requests"
    TOKEN_DENIALS = "token_denials"
    API_REQUESTS = "api_requests"


@dataclass
class TokenUsageStats:
    """Daily per-client token usage counters"""

    client_id: str
    date: date
    token_requests: int = 0
    token_denials: int = 0
    api_requests: int = 0
    unique_ips: int = 0

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "date": self.date.isoformat(),
            "token_requests": self.token_requests,
            "token_denials": self.token_denials,
            "api_requests": self.api_requests,
            "unique_ips": self.unique_ips,
        }
