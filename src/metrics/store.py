"""
MetricStore: durable, dimensioned time-series with bucketed aggregation.

Recording never raises. Each recorded point is handed to the registered
record hooks (instant alert evaluation) before ``record`` returns.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta

import pandas as pd
import structlog

from src.core.clock import Clock, utcnow
from src.core.events import (
    AccessViolation,
    EventBus,
    MetricRecorded,
    SecurityEventOccurred,
    TokenCreated,
    TokenDenied,
    TokenUsed,
    Topic,
)

from .database import MetricDatabase
from .models import (
    Aggregation,
    AggregatedValue,
    Bucket,
    MetricPoint,
    MetricType,
    TokenUsageStats,
    UsageCounter,
    bucket_label,
)

logger = structlog.get_logger(__name__)

DEFAULT_QUERY_DAYS = 7

PANDAS_AGGREGATIONS = {
    Aggregation.SUM: "sum",
    Aggregation.AVG: "mean",
    Aggregation.MIN: "min",
    Aggregation.MAX: "max",
    Aggregation.COUNT: "count",
}

RecordHook = Callable[[MetricPoint], Awaitable[None]]


def aggregate_points(
    points: pd.DataFrame, bucket: Bucket, aggregation: Aggregation
) -> list[AggregatedValue]:
    """Group raw points by bucket label and aggregate each group, ordered by label"""
    if points.empty:
        return []

    timestamps = pd.to_datetime(points["timestamp"], utc=True)
    frame = pd.DataFrame(
        {
            "label": [bucket_label(ts.to_pydatetime(), bucket) for ts in timestamps],
            "value": points["value"].astype(float).to_numpy(),
        }
    )
    grouped = frame.groupby("label", sort=True)["value"]
    values = grouped.agg(PANDAS_AGGREGATIONS[Aggregation(aggregation)])
    counts = grouped.count()

    return [
        AggregatedValue(label=label, value=float(values[label]), count=int(counts[label]))
        for label in values.index
    ]


class MetricStore:
    """Metric ingestion and query service"""

    def __init__(
        self,
        db: MetricDatabase,
        bus: EventBus | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.bus = bus
        self.clock = clock
        self._record_hooks: list[RecordHook] = []

    def add_record_hook(self, hook: RecordHook) -> None:
        self._record_hooks.append(hook)

    async def record(
        self,
        metric_name: str,
        value: float,
        bucket: Bucket = Bucket.HOUR,
        dimensions: dict[str, str] | None = None,
        subject: str | None = None,
        metric_type: MetricType = MetricType.GAUGE,
        source: str | None = None,
    ) -> MetricPoint | None:
        """Append a point; failures are logged and yield None"""
        try:
            point = MetricPoint(
                metric_name=metric_name,
                value=float(value),
                timestamp=self.clock(),
                bucket=Bucket(bucket),
                dimensions={k: str(v) for k, v in (dimensions or {}).items() if v is not None},
                subject=subject,
                metric_type=MetricType(metric_type),
                source=source,
            )
            point_id = await asyncio.to_thread(self.db.insert_point, point)
        except Exception as e:
            logger.error("Failed to record metric", metric=metric_name, error=str(e))
            return None

        if point_id is None:
            logger.warning("Metric not recorded", metric=metric_name)
            return None

        point = replace(point, id=point_id)

        if self.bus is not None:
            await self.bus.publish(
                MetricRecorded(
                    metric_name=point.metric_name,
                    value=point.value,
                    bucket=point.bucket.value,
                    timestamp=point.timestamp,
                    dimensions=point.dimensions,
                    subject=point.subject,
                )
            )

        for hook in self._record_hooks:
            try:
                await hook(point)
            except Exception as e:
                logger.error("Record hook failed", metric=metric_name, error=str(e))

        return point

    async def query(
        self,
        metric_name: str,
        start: datetime | None = None,
        end: datetime | None = None,
        bucket: Bucket = Bucket.HOUR,
        aggregation: Aggregation = Aggregation.SUM,
        subject: str | None = None,
        dimensions: dict[str, str] | None = None,
    ) -> list[AggregatedValue]:
        """Aggregated values per bucket label, ordered by label"""
        end = end or self.clock()
        start = start or end - timedelta(days=DEFAULT_QUERY_DAYS)
        bucket = Bucket(bucket)

        points = await asyncio.to_thread(
            self.db.fetch_points,
            metric_name,
            bucket.value,
            start,
            end,
            subject,
            dimensions or None,
        )
        return aggregate_points(points, bucket, Aggregation(aggregation))

    async def total(self, metric_name: str, **kwargs) -> float:
        """Sum of the aggregated bucket values of a query"""
        return sum(item.value for item in await self.query(metric_name, **kwargs))

    async def get_token_usage(
        self, client_id: str | None = None, days: int = 1
    ) -> list[TokenUsageStats]:
        today = self.clock().date()
        return await asyncio.to_thread(
            self.db.get_token_usage, client_id, today - timedelta(days=days - 1), today
        )

    # ========================================
    # Event listeners
    # ========================================

    def register_listeners(self, bus: EventBus) -> None:
        bus.subscribe(Topic.TOKEN_CREATED, self.on_token_created)
        bus.subscribe(Topic.TOKEN_DENIED, self.on_token_denied)
        bus.subscribe(Topic.TOKEN_USED, self.on_token_used)
        bus.subscribe(Topic.ACCESS_VIOLATION, self.on_access_violation)
        bus.subscribe(Topic.SECURITY_EVENT, self.on_security_event)

    async def _increment(
        self, client_id: str, counter: UsageCounter, ip_address: str | None = None
    ) -> None:
        ok = await asyncio.to_thread(
            self.db.increment_usage, client_id, self.clock().date(), counter, 1, ip_address
        )
        if not ok:
            logger.warning("Usage counter not updated", client_id=client_id, counter=counter.value)

    async def on_token_created(self, event: TokenCreated) -> None:
        await self.record(
            "token_creations",
            1,
            dimensions={"ip_address": event.ip_address},
            subject=event.client_id,
            metric_type=MetricType.COUNTER,
            source="token-service",
        )
        await self._increment(event.client_id, UsageCounter.TOKEN_REQUESTS, event.ip_address)

    async def on_token_denied(self, event: TokenDenied) -> None:
        await self.record(
            "token_denials",
            1,
            dimensions={"reason": event.reason, "ip_address": event.ip_address},
            subject=event.client_id,
            metric_type=MetricType.COUNTER,
            source="token-service",
        )
        await self._increment(event.client_id, UsageCounter.TOKEN_DENIALS, event.ip_address)

    async def on_token_used(self, event: TokenUsed) -> None:
        await self.record(
            "api_requests",
            1,
            dimensions={"ip_address": event.ip_address, "endpoint": event.endpoint},
            subject=event.client_id,
            metric_type=MetricType.COUNTER,
            source="token-service",
        )
        await self._increment(event.client_id, UsageCounter.API_REQUESTS, event.ip_address)

    async def on_access_violation(self, event: AccessViolation) -> None:
        await self.record(
            "ip_violations",
            1,
            dimensions={"ip_address": event.ip_address, "reason": event.reason},
            subject=event.client_id,
            metric_type=MetricType.COUNTER,
            source="ip-access-control",
        )

    async def on_security_event(self, event: SecurityEventOccurred) -> None:
        await self.record(
            "security_events",
            1,
            dimensions={"event_type": event.event_type, "severity": event.severity},
            subject=event.client_id,
            metric_type=MetricType.COUNTER,
            source="security-events",
        )
