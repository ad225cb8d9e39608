"""
HealthCheckScheduler: one independent timer per enabled check.

After each probe the most recent ``alert_threshold + 1`` results are
inspected for a failure or recovery transition.
"""

import asyncio
from dataclasses import fields, replace
from datetime import timedelta
from functools import partial
from typing import Any

import structlog

from src.core.clock import Clock, utcnow
from src.core.errors import NotFoundError, ValidationError
from src.core.events import EventBus, HealthCheckStatusChanged
from src.core.scheduler import TaskScheduler
from src.metrics.models import Bucket, MetricType
from src.metrics.store import MetricStore

from .database import HealthCheckDatabase
from .models import (
    SUMMARY_WINDOW_HOURS,
    CheckSummary,
    HealthCheckDefinition,
    HealthCheckResult,
    HealthSummary,
    Outcome,
    Transition,
    detect_transition,
)
from .probes import Probe, ProbeOutcome, default_probes

logger = structlog.get_logger(__name__)


class HealthCheckScheduler:
    """Schedules probes, records results and reports transitions"""

    def __init__(
        self,
        db: HealthCheckDatabase,
        metrics: MetricStore | None = None,
        bus: EventBus | None = None,
        probes: dict | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.metrics = metrics
        self.bus = bus
        self.probes: dict = probes if probes is not None else default_probes(db)
        self.clock = clock
        self.scheduler = TaskScheduler("health-checks")

    async def start(self) -> None:
        checks = await asyncio.to_thread(self.db.list_checks, True)
        for check in checks:
            self._reschedule(check)
        logger.info("Health check scheduler started", checks=len(checks))

    async def stop(self) -> None:
        await self.scheduler.shutdown()
        for probe in self.probes.values():
            if hasattr(probe, "aclose"):
                await probe.aclose()

    def _reschedule(self, check: HealthCheckDefinition) -> None:
        key = f"check:{check.id}"
        if check.enabled:
            self.scheduler.schedule(key, partial(self.run_health_check, check), check.interval_seconds)
        else:
            self.scheduler.cancel(key)

    # ========================================
    # Definition API
    # ========================================

    async def create_check(self, data: dict[str, Any]) -> HealthCheckDefinition:
        check = HealthCheckDefinition.from_dict(data)
        check_id = await asyncio.to_thread(self.db.insert_check, check)
        if check_id is None:
            raise RuntimeError("Failed to store health check")
        check.id = check_id
        self._reschedule(check)
        logger.info("Health check created", check_id=check_id, name=check.name)
        return check

    async def update_check(self, check_id: int, changes: dict[str, Any]) -> HealthCheckDefinition:
        current = await self.get_check(check_id)
        unknown = set(changes) - ({f.name for f in fields(HealthCheckDefinition)} - {"id"})
        if unknown:
            raise ValidationError(f"Unknown health check fields: {sorted(unknown)}")

        check = replace(current, **changes).validate()
        if not await asyncio.to_thread(self.db.update_check, check):
            raise RuntimeError(f"Failed to update health check {check_id}")
        self._reschedule(check)
        return check

    async def delete_check(self, check_id: int) -> None:
        await self.get_check(check_id)
        self.scheduler.cancel(f"check:{check_id}")
        await asyncio.to_thread(self.db.delete_check, check_id)

    async def get_check(self, check_id: int) -> HealthCheckDefinition:
        check = await asyncio.to_thread(self.db.get_check, check_id)
        if check is None:
            raise NotFoundError("Health check", check_id)
        return check

    async def list_checks(self, enabled_only: bool = False) -> list[HealthCheckDefinition]:
        return await asyncio.to_thread(self.db.list_checks, enabled_only)

    # ========================================
    # Execution
    # ========================================

    async def run_check_now(self, check_id: int) -> HealthCheckResult:
        return await self.run_health_check(await self.get_check(check_id))

    async def run_health_check(self, check: HealthCheckDefinition) -> HealthCheckResult:
        outcome = await self._probe(check)
        result = HealthCheckResult(
            check_id=check.id,
            timestamp=self.clock(),
            status=outcome.status,
            response_time_ms=outcome.response_time_ms,
            status_code=outcome.status_code,
            response_body=outcome.body,
            error=outcome.error,
        )
        result.id = await asyncio.to_thread(self.db.insert_result, result)
        logger.debug(
            "Health check executed",
            check_id=check.id,
            status=result.status.value,
            response_time_ms=result.response_time_ms,
        )

        recent = await asyncio.to_thread(self.db.recent_results, check.id, check.alert_threshold + 1)
        transition = detect_transition(recent, check.alert_threshold)
        if transition is not None:
            await self._report(check, result, transition)
        return result

    async def _probe(self, check: HealthCheckDefinition) -> ProbeOutcome:
        probe: Probe | None = self.probes.get(check.check_type)
        if probe is None:
            return ProbeOutcome(Outcome.FAILURE, 0.0, error=f"Unsupported check type {check.check_type}")
        try:
            return await probe.run(check)
        except Exception as e:
            logger.error("Probe raised", check_id=check.id, error=str(e))
            return ProbeOutcome(Outcome.FAILURE, 0.0, error=str(e))

    async def _report(
        self, check: HealthCheckDefinition, result: HealthCheckResult, transition: Transition
    ) -> None:
        failed = transition.kind == "failure"
        severity = check.alert_severity if failed else "info"
        log = logger.warning if failed else logger.info
        log(
            "Health check status changed",
            check_id=check.id,
            name=check.name,
            transition=transition.kind,
            consecutive_failures=transition.consecutive_failures,
            downtime_seconds=transition.downtime_seconds,
        )

        if self.bus is not None:
            await self.bus.publish(
                HealthCheckStatusChanged(
                    check_id=check.id,
                    check_name=check.name,
                    transition=transition.kind,
                    severity=severity,
                    consecutive_failures=transition.consecutive_failures,
                    timestamp=result.timestamp,
                    downtime_seconds=transition.downtime_seconds,
                    error=result.error,
                )
            )

        if self.metrics is not None:
            dimensions = {
                "health_check_id": str(check.id),
                "health_check_name": check.name,
                "health_check_type": check.check_type.value,
            }
            if failed:
                dimensions["severity"] = severity
                metric_name = "health_check_failures"
            else:
                dimensions["downtime_seconds"] = f"{transition.downtime_seconds:.0f}"
                metric_name = "health_check_recoveries"
            await self.metrics.record(
                metric_name,
                1,
                bucket=Bucket.HOUR,
                dimensions=dimensions,
                metric_type=MetricType.COUNTER,
                source="health-checks",
            )

    # ========================================
    # Read model
    # ========================================

    async def get_summary(self) -> HealthSummary:
        checks = await asyncio.to_thread(self.db.list_checks, False)
        since = self.clock() - timedelta(hours=SUMMARY_WINDOW_HOURS)
        summaries = []
        for check in checks:
            latest = await asyncio.to_thread(self.db.recent_results, check.id, 1)
            stats = await asyncio.to_thread(self.db.result_stats, check.id, since)
            last = latest[0] if latest else None
            summaries.append(
                CheckSummary(
                    check_id=check.id,
                    name=check.name,
                    check_type=check.check_type.value,
                    target=check.target,
                    enabled=check.enabled,
                    interval_seconds=check.interval_seconds,
                    current_status=last.status.value if last else "unknown",
                    last_checked=last.timestamp if last else None,
                    last_response_time_ms=last.response_time_ms if last else None,
                    last_status_code=last.status_code if last else None,
                    last_error=last.error if last else None,
                    stats=stats,
                )
            )
        return HealthSummary(checks=summaries)
