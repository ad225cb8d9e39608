"""
AlertEngine: threshold alerts over MetricStore.

Instant definitions (no sustain duration) are evaluated on every recorded
point. Sustained definitions each own a timer that sums the metric over
the sustain window. Triggers are deduplicated against unresolved history.
"""

import asyncio
from dataclasses import fields, replace
from datetime import timedelta
from functools import partial
from typing import Any

import structlog

from src.core.clock import Clock, utcnow
from src.core.comparison import compare
from src.core.errors import NotFoundError, ValidationError
from src.core.events import AlertTriggered, EventBus
from src.core.notifications import NotificationSink
from src.core.scheduler import TaskScheduler
from src.metrics.models import Aggregation, MetricPoint
from src.metrics.store import MetricStore

from .database import AlertDatabase
from .models import (
    SWEEP_INTERVAL_SECONDS,
    TRIGGER_DEDUP_MINUTES,
    AlertDefinition,
    AlertHistory,
    Channel,
)

logger = structlog.get_logger(__name__)

# Window used by test_alert for definitions without a sustain duration
TEST_WINDOW_SECONDS = 300


def trigger_message(alert: AlertDefinition, value: float) -> str:
    return (
        f'Alert "{alert.name}" triggered: {alert.metric_name} '
        f"{alert.condition.value} {alert.threshold:g} (actual value: {value:g})"
    )


class AlertEngine:
    """Evaluates alert definitions and drives the alert lifecycle"""

    def __init__(
        self,
        db: AlertDatabase,
        metrics: MetricStore,
        sink: NotificationSink,
        bus: EventBus | None = None,
        clock: Clock = utcnow,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    ):
        self.db = db
        self.metrics = metrics
        self.sink = sink
        self.bus = bus
        self.clock = clock
        self.sweep_interval_seconds = sweep_interval_seconds
        self.scheduler = TaskScheduler("alerts")

        self.metrics.add_record_hook(self.evaluate_instant)

    async def start(self) -> None:
        alerts = await asyncio.to_thread(self.db.list_alerts, True)
        for alert in alerts:
            self._reschedule(alert)
        logger.info("Alert engine started", sustained_alerts=len(self.scheduler.keys))

    async def stop(self) -> None:
        await self.scheduler.shutdown()

    def _reschedule(self, alert: AlertDefinition) -> None:
        key = f"alert:{alert.id}"
        if alert.enabled and alert.is_sustained:
            self.scheduler.schedule(
                key,
                partial(self.evaluate_sustained, alert),
                self.sweep_interval_seconds,
                initial_delay=self.sweep_interval_seconds,
            )
        else:
            self.scheduler.cancel(key)

    # ========================================
    # Definition API
    # ========================================

    async def create_alert(self, data: dict[str, Any]) -> AlertDefinition:
        alert = AlertDefinition.from_dict(data)
        alert_id = await asyncio.to_thread(self.db.insert_alert, alert)
        if alert_id is None:
            raise RuntimeError("Failed to store alert definition")
        alert.id = alert_id
        self._reschedule(alert)
        logger.info("Alert created", alert_id=alert_id, name=alert.name)
        return alert

    async def update_alert(self, alert_id: int, changes: dict[str, Any]) -> AlertDefinition:
        current = await self.get_alert(alert_id)
        allowed = {f.name for f in fields(AlertDefinition)} - {"id", "last_triggered_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown alert fields: {sorted(unknown)}")

        alert = replace(current, **changes).validate()
        if not await asyncio.to_thread(self.db.update_alert, alert):
            raise RuntimeError(f"Failed to update alert {alert_id}")
        self._reschedule(alert)
        return alert

    async def delete_alert(self, alert_id: int) -> None:
        await self.get_alert(alert_id)
        self.scheduler.cancel(f"alert:{alert_id}")
        await asyncio.to_thread(self.db.delete_alert, alert_id)

    async def get_alert(self, alert_id: int) -> AlertDefinition:
        alert = await asyncio.to_thread(self.db.get_alert, alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    async def list_alerts(self, enabled_only: bool = False) -> list[AlertDefinition]:
        return await asyncio.to_thread(self.db.list_alerts, enabled_only)

    # ========================================
    # Evaluation
    # ========================================

    async def current_value(self, alert: AlertDefinition, window_seconds: int | None = None) -> float:
        """Sum of the metric over the sustain window"""
        end = self.clock()
        start = end - timedelta(seconds=window_seconds or alert.duration_seconds)
        return await self.metrics.total(
            alert.metric_name,
            start=start,
            end=end,
            bucket=alert.bucket,
            aggregation=Aggregation.SUM,
            subject=alert.subject,
            dimensions=alert.dimensions,
        )

    async def evaluate_sustained(self, alert: AlertDefinition) -> AlertHistory | None:
        value = await self.current_value(alert)
        if not compare(value, alert.condition, alert.threshold):
            return None
        return await self.trigger(alert, value)

    async def evaluate_all(self) -> int:
        """Evaluate every enabled sustained definition; returns the number of triggers"""
        alerts = await asyncio.to_thread(self.db.list_alerts, True)
        triggered = 0
        for alert in alerts:
            if not alert.is_sustained:
                continue
            try:
                if await self.evaluate_sustained(alert) is not None:
                    triggered += 1
            except Exception as e:
                logger.error("Alert evaluation failed", alert_id=alert.id, error=str(e), exc_info=True)
        return triggered

    async def evaluate_instant(self, point: MetricPoint) -> int:
        """Check a freshly recorded point against every instant definition"""
        alerts = await asyncio.to_thread(self.db.list_alerts, True, point.metric_name)
        triggered = 0
        for alert in alerts:
            if alert.is_sustained or not alert.applies_to(point):
                continue
            try:
                if compare(point.value, alert.condition, alert.threshold):
                    if await self.trigger(alert, point.value) is not None:
                        triggered += 1
            except Exception as e:
                logger.error("Instant alert evaluation failed", alert_id=alert.id, error=str(e))
        return triggered

    async def test_alert(self, alert_id: int) -> dict[str, Any]:
        """Evaluate without triggering"""
        alert = await self.get_alert(alert_id)
        value = await self.current_value(alert, alert.duration_seconds or TEST_WINDOW_SECONDS)
        return {
            "alert_id": alert.id,
            "metric_name": alert.metric_name,
            "condition": alert.condition.value,
            "threshold": alert.threshold,
            "value": value,
            "would_trigger": compare(value, alert.condition, alert.threshold),
        }

    async def trigger(self, alert: AlertDefinition, value: float) -> AlertHistory | None:
        now = self.clock()
        since = now - timedelta(minutes=TRIGGER_DEDUP_MINUTES)
        if await asyncio.to_thread(self.db.has_unresolved_since, alert.id, since):
            logger.debug("Alert suppressed by recent unresolved trigger", alert_id=alert.id)
            return None

        history = AlertHistory(
            alert_id=alert.id,
            triggered_at=now,
            value=value,
            message=trigger_message(alert, value),
        )
        history_id = await asyncio.to_thread(self.db.insert_history, history)
        if history_id is None:
            return None
        history.id = history_id
        await asyncio.to_thread(self.db.mark_triggered, alert.id, now)

        logger.warning(
            "Alert triggered",
            alert_id=alert.id,
            name=alert.name,
            severity=alert.severity,
            value=value,
            threshold=alert.threshold,
        )
        if self.bus is not None:
            await self.bus.publish(
                AlertTriggered(
                    alert_id=alert.id,
                    alert_name=alert.name,
                    history_id=history_id,
                    severity=alert.severity,
                    metric_name=alert.metric_name,
                    condition=alert.condition.value,
                    threshold=alert.threshold,
                    value=value,
                    message=history.message,
                    triggered_at=now,
                )
            )
        await self._notify(alert, history)
        return history

    async def _notify(self, alert: AlertDefinition, history: AlertHistory) -> None:
        channels = set(alert.notification_channels)
        body = (
            f"{history.message}\n\n"
            f"Metric: {alert.metric_name}\n"
            f"Condition: {alert.condition.value} {alert.threshold:g}\n"
            f"Value: {history.value:g}\n"
            f"Severity: {alert.severity}\n"
            f"Time: {history.triggered_at.isoformat()}"
        )
        deliveries = []
        if Channel.EMAIL in channels and alert.notify_users:
            deliveries.append(
                self.sink.send_email(
                    alert.notify_users, f"Alert: {alert.name} ({alert.severity.upper()})", body
                )
            )
        if Channel.WEBHOOK in channels and alert.webhook_url:
            deliveries.append(
                self.sink.send_webhook(
                    alert.webhook_url,
                    {
                        "alert_id": alert.id,
                        "alert_name": alert.name,
                        "severity": alert.severity,
                        "metric_name": alert.metric_name,
                        "condition": alert.condition.value,
                        "threshold": alert.threshold,
                        "value": history.value,
                        "triggered_at": history.triggered_at.isoformat(),
                        "message": history.message,
                        "history_id": history.id,
                    },
                )
            )
        if Channel.DASHBOARD in channels and alert.notify_users:
            deliveries.append(
                self.sink.send_dashboard(
                    alert.notify_users, f"Alert: {alert.name}", body, alert.severity
                )
            )

        for result in await asyncio.gather(*deliveries, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error("Alert notification failed", alert_id=alert.id, error=str(result))

    # ========================================
    # Lifecycle
    # ========================================

    async def _history(self, history_id: int) -> AlertHistory:
        history = await asyncio.to_thread(self.db.get_history, history_id)
        if history is None:
            raise NotFoundError("Alert history", history_id)
        return history

    async def acknowledge(self, history_id: int, actor: str, notes: str | None = None) -> AlertHistory:
        history = await self._history(history_id)
        if history.acknowledged_at is not None:
            return history
        await asyncio.to_thread(self.db.acknowledge_history, history_id, actor, self.clock(), notes)
        return await self._history(history_id)

    async def resolve(self, history_id: int, actor: str, notes: str | None = None) -> AlertHistory:
        history = await self._history(history_id)
        if history.is_resolved:
            return history
        await asyncio.to_thread(self.db.resolve_history, history_id, actor, self.clock(), notes)
        return await self._history(history_id)

    async def list_history(
        self, alert_id: int | None = None, unresolved_only: bool = False, limit: int = 100
    ) -> list[AlertHistory]:
        return await asyncio.to_thread(self.db.list_history, alert_id, unresolved_only, limit)
