"""
AnomalyDetector: trains per-config baselines and scores recent points.

A run fetches a training window ending one day before now and the current
window (the last day) through MetricStore at hourly buckets, scores each
current bucket and records deduplicated anomalies.
"""

import asyncio
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.core.clock import Clock, utcnow
from src.core.errors import NotFoundError, ValidationError
from src.core.events import AnomalyDetected, EventBus
from src.core.scheduler import TaskScheduler
from src.metrics.models import Aggregation, AggregatedValue, Bucket, parse_bucket_label
from src.metrics.store import MetricStore

from .cache import BaselineCache
from .database import AnomalyDatabase
from .methods import AnomalyDetectionMethod, Baseline, DetectionResult, get_method
from .models import (
    DEDUP_WINDOW_HOURS,
    EVENT_LINK_LIMIT,
    EVENT_LINK_WINDOW_MINUTES,
    Anomaly,
    AnomalyDetectionConfig,
    AnomalyStatus,
)

logger = structlog.get_logger(__name__)

RUN_INTERVAL_SECONDS = 3600


@dataclass
class Candidate:
    """A scored current bucket"""

    label: str
    timestamp: datetime
    result: DetectionResult

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "timestamp": self.timestamp.isoformat(), **self.result.to_dict()}


class AnomalyDetector:
    """Periodic statistical anomaly detection over MetricStore"""

    def __init__(
        self,
        db: AnomalyDatabase,
        metrics: MetricStore,
        bus: EventBus | None = None,
        cache: BaselineCache | None = None,
        event_db=None,
        clock: Clock = utcnow,
        run_interval_seconds: float = RUN_INTERVAL_SECONDS,
    ):
        self.db = db
        self.metrics = metrics
        self.bus = bus
        self.cache = cache
        self.event_db = event_db
        self.clock = clock
        self.run_interval_seconds = run_interval_seconds
        self.scheduler = TaskScheduler("anomaly-detector")

        self.stats = {"runs": 0, "configs_evaluated": 0, "anomalies_detected": 0, "failures": 0}

    async def start(self) -> None:
        self.scheduler.schedule(
            "run_all",
            self.run_all,
            self.run_interval_seconds,
            initial_delay=self.run_interval_seconds,
        )
        logger.info("Anomaly detector started", interval_seconds=self.run_interval_seconds)

    async def stop(self) -> None:
        await self.scheduler.shutdown()

    # ========================================
    # Config API
    # ========================================

    async def create_config(self, data: dict[str, Any]) -> AnomalyDetectionConfig:
        config = AnomalyDetectionConfig.from_dict(data)
        config_id = await asyncio.to_thread(self.db.insert_config, config)
        if config_id is None:
            raise RuntimeError("Failed to store anomaly detection config")
        config.id = config_id
        logger.info("Anomaly config created", config_id=config_id, metric=config.metric_name)
        return config

    async def update_config(self, config_id: int, changes: dict[str, Any]) -> AnomalyDetectionConfig:
        current = await self.get_config(config_id)
        allowed = {f.name for f in fields(AnomalyDetectionConfig)} - {"id", "last_trained_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown config fields: {sorted(unknown)}")

        config = replace(current, **changes).validate()
        if not await asyncio.to_thread(self.db.update_config, config):
            raise RuntimeError(f"Failed to update anomaly config {config_id}")
        if self.cache is not None:
            await asyncio.to_thread(self.cache.invalidate, config_id)
        return config

    async def delete_config(self, config_id: int) -> None:
        await self.get_config(config_id)
        await asyncio.to_thread(self.db.delete_config, config_id)
        if self.cache is not None:
            await asyncio.to_thread(self.cache.invalidate, config_id)

    async def get_config(self, config_id: int) -> AnomalyDetectionConfig:
        config = await asyncio.to_thread(self.db.get_config, config_id)
        if config is None:
            raise NotFoundError("Anomaly detection config", config_id)
        return config

    async def list_configs(self, enabled_only: bool = False) -> list[AnomalyDetectionConfig]:
        return await asyncio.to_thread(self.db.list_configs, enabled_only)

    # ========================================
    # Detection
    # ========================================

    async def run_all(self) -> int:
        """Run every enabled config; returns the number of anomalies recorded"""
        self.stats["runs"] += 1
        configs = await asyncio.to_thread(self.db.list_configs, True)
        recorded = 0

        for config in configs:
            try:
                recorded += len(await self.run_config(config))
                self.stats["configs_evaluated"] += 1
            except Exception as e:
                self.stats["failures"] += 1
                logger.error(
                    "Anomaly detection failed",
                    config_id=config.id,
                    metric=config.metric_name,
                    error=str(e),
                    exc_info=True,
                )

        logger.info("Anomaly detection run complete", configs=len(configs), anomalies=recorded)
        return recorded

    async def run_config(self, config: AnomalyDetectionConfig) -> list[Anomaly]:
        now = self.clock()
        candidates = await self._score(config, now)
        if candidates is None:
            return []

        recorded = []
        for candidate in candidates:
            if not candidate.result.is_anomaly:
                continue
            anomaly = await self._record(config, candidate)
            if anomaly is not None:
                recorded.append(anomaly)

        await asyncio.to_thread(self.db.mark_trained, config.id, now)
        return recorded

    async def test_config(self, config: AnomalyDetectionConfig | int) -> list[Candidate]:
        """Score the current window without recording anything"""
        if isinstance(config, int):
            config = await self.get_config(config)
        return await self._score(config, self.clock()) or []

    async def _score(
        self, config: AnomalyDetectionConfig, now: datetime
    ) -> list[Candidate] | None:
        method = get_method(config.algorithm, config.sensitivity)
        training_end = now - timedelta(days=1)
        training_start = training_end - timedelta(days=config.training_window_days)

        training = await self._window(config, training_start, training_end)
        current = await self._window(config, training_end, now)
        if not training or not current:
            logger.debug(
                "Insufficient data, skipping",
                config_id=config.id,
                metric=config.metric_name,
                training_points=len(training),
                current_points=len(current),
            )
            return None

        baseline = await self._baseline(config, method, training, training_end, now)
        return [
            Candidate(
                label=item.label,
                timestamp=parse_bucket_label(item.label, Bucket.HOUR),
                result=method.predict(item.value, baseline),
            )
            for item in current
        ]

    async def _window(
        self, config: AnomalyDetectionConfig, start: datetime, end: datetime
    ) -> list[AggregatedValue]:
        return await self.metrics.query(
            config.metric_name,
            start=start,
            end=end,
            bucket=Bucket.HOUR,
            aggregation=Aggregation.SUM,
            subject=config.subject,
            dimensions=config.dimensions,
        )

    async def _baseline(
        self,
        config: AnomalyDetectionConfig,
        method: AnomalyDetectionMethod,
        training: list[AggregatedValue],
        training_end: datetime,
        now: datetime,
    ) -> Baseline:
        training_hour = training_end.strftime("%Y-%m-%dT%H")
        if self.cache is not None and config.id is not None:
            cached = await asyncio.to_thread(self.cache.load_baseline, config.id, method.name)
            if cached is not None and cached.training_end == training_hour:
                return cached

        baseline = method.fit(
            [item.value for item in training],
            metric_name=config.metric_name,
            config_id=config.id,
            trained_at=now.isoformat(),
            training_end=training_hour,
        )
        if self.cache is not None and config.id is not None:
            await asyncio.to_thread(self.cache.save_baseline, baseline)
        return baseline

    async def _record(self, config: AnomalyDetectionConfig, candidate: Candidate) -> Anomaly | None:
        since = candidate.timestamp - timedelta(hours=DEDUP_WINDOW_HOURS)
        duplicate = await asyncio.to_thread(
            self.db.has_recent_anomaly, config.id, config.metric_name, config.subject, since
        )
        if duplicate:
            logger.debug(
                "Duplicate anomaly suppressed",
                config_id=config.id,
                metric=config.metric_name,
                label=candidate.label,
            )
            return None

        result = candidate.result
        anomaly = Anomaly(
            config_id=config.id,
            metric_name=config.metric_name,
            subject=config.subject,
            timestamp=candidate.timestamp,
            value=result.actual_value,
            expected_value=result.expected_value,
            deviation=result.deviation,
            score=result.score,
            severity=result.severity,
            status=AnomalyStatus.OPEN,
            linked_event_ids=await self._related_events(config, candidate.timestamp),
        )
        anomaly_id = await asyncio.to_thread(self.db.insert_anomaly, anomaly)
        if anomaly_id is None:
            return None
        anomaly.id = anomaly_id
        self.stats["anomalies_detected"] += 1

        logger.info(
            "Anomaly detected",
            anomaly_id=anomaly_id,
            metric=anomaly.metric_name,
            subject=anomaly.subject,
            value=anomaly.value,
            expected=anomaly.expected_value,
            score=anomaly.score,
            severity=anomaly.severity,
        )
        if self.bus is not None:
            await self.bus.publish(
                AnomalyDetected(
                    metric_name=anomaly.metric_name,
                    severity=anomaly.severity,
                    value=anomaly.value,
                    expected_value=anomaly.expected_value,
                    score=anomaly.score,
                    subject=anomaly.subject,
                    anomaly_id=anomaly_id,
                    config_id=config.id,
                    timestamp=anomaly.timestamp,
                )
            )
        return anomaly

    async def _related_events(self, config: AnomalyDetectionConfig, timestamp: datetime) -> list[int]:
        if self.event_db is None or config.subject is None:
            return []
        window = timedelta(minutes=EVENT_LINK_WINDOW_MINUTES)
        events = await asyncio.to_thread(
            self.event_db.find_security_events,
            start=timestamp - window,
            end=timestamp + window,
            client_id=config.subject,
            limit=EVENT_LINK_LIMIT,
        )
        return [event["id"] for event in events]

    # ========================================
    # Anomaly lifecycle
    # ========================================

    async def update_anomaly_status(self, anomaly_id: int, status: AnomalyStatus | str) -> Anomaly:
        try:
            status = AnomalyStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown anomaly status '{status}'") from None

        anomaly = await asyncio.to_thread(self.db.get_anomaly, anomaly_id)
        if anomaly is None:
            raise NotFoundError("Anomaly", anomaly_id)
        if anomaly.status != status:
            await asyncio.to_thread(self.db.update_anomaly_status, anomaly_id, status)
            anomaly.status = status
        return anomaly

    async def list_anomalies(self, **filters) -> list[Anomaly]:
        return await asyncio.to_thread(self.db.list_anomalies, **filters)
