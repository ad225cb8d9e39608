"""
Bus listeners that turn externally pushed security signals into cases.

Unlike scheduled rules these candidates carry no rule id, so the CaseStore
merges them by title and source within the last 24 hours.
"""

import asyncio
from datetime import timedelta

import structlog

from src.core.events import (
    AccessViolation,
    AnomalyDetected,
    EventBus,
    HealthCheckStatusChanged,
    ScannerFinding,
    SecurityEventOccurred,
    Topic,
)

from .cases import CaseStore
from .models import SEVERITIES, SIMILAR_CASE_WINDOW_HOURS, Breach, BreachCandidate

logger = structlog.get_logger(__name__)

ANOMALY_SEVERITY = {"high": "critical", "medium": "high"}


def _severity(value: str | None, default: str = "medium") -> str:
    return value if value in SEVERITIES else default


class BreachListeners:
    """Subscribes the case store to security, access, anomaly, scanner and health signals"""

    def __init__(self, cases: CaseStore):
        self.cases = cases

    def register(self, bus: EventBus) -> None:
        bus.subscribe(Topic.SECURITY_EVENT, self.on_security_event)
        bus.subscribe(Topic.ACCESS_VIOLATION, self.on_access_violation)
        bus.subscribe(Topic.ANOMALY_DETECTED, self.on_anomaly)
        bus.subscribe(Topic.SCANNER_FINDING, self.on_scanner_finding)
        bus.subscribe(Topic.HEALTH_CHECK_STATUS_CHANGED, self.on_health_check)

    async def on_security_event(self, event: SecurityEventOccurred) -> Breach:
        return await self.cases.create_or_merge(
            BreachCandidate(
                title=f"Security Event: {event.event_type}",
                description=f"Security event of type {event.event_type} reported",
                detection_type="security_event",
                severity=_severity(event.severity),
                source="oauth-security",
                evidence=event.to_dict(),
                workspace_id=event.workspace_id,
                affected_resources=[event.client_id] if event.client_id else [],
            )
        )

    async def on_access_violation(self, event: AccessViolation) -> Breach:
        return await self.cases.create_or_merge(
            BreachCandidate(
                title=f"IP Access Violation: {event.ip_address}",
                description=f"Access from {event.ip_address} denied for client {event.client_id}",
                detection_type="ip_violation",
                severity="high",
                source="ip-access-control",
                evidence=event.to_dict(),
                workspace_id=event.workspace_id,
                affected_resources=[event.client_id],
            )
        )

    async def on_anomaly(self, event: AnomalyDetected) -> Breach:
        return await self.cases.create_or_merge(
            BreachCandidate(
                title=f"Anomaly Detected: {event.metric_name}",
                description=f"Anomalous value {event.value:g} for metric {event.metric_name}",
                detection_type="anomaly",
                severity=ANOMALY_SEVERITY.get(event.severity, "medium"),
                source="monitoring-anomaly",
                evidence=event.to_dict(),
                affected_resources=[event.subject] if event.subject else [],
            )
        )

    async def on_scanner_finding(self, event: ScannerFinding) -> Breach:
        return await self.cases.create_or_merge(
            BreachCandidate(
                title=f"Scanner Finding: {event.title}",
                description=event.description or event.title,
                detection_type="scanner_finding",
                severity=_severity(event.severity),
                source="security-scanner",
                evidence=event.to_dict(),
                workspace_id=event.workspace_id,
            )
        )

    async def on_health_check(self, event: HealthCheckStatusChanged) -> Breach | None:
        title = f"Health Check Failure: {event.check_name}"
        if event.transition == "failure":
            return await self.cases.create_or_merge(
                BreachCandidate(
                    title=title,
                    description=(
                        f"Health check {event.check_name} failed "
                        f"{event.consecutive_failures} times in a row"
                    ),
                    detection_type="health_check",
                    severity=_severity(event.severity, "high"),
                    source="health-monitoring",
                    evidence=event.to_dict(),
                    affected_resources=[str(event.check_id)],
                )
            )

        # Recovery: annotate the open case, if any
        since = event.timestamp - timedelta(
            hours=SIMILAR_CASE_WINDOW_HOURS, seconds=event.downtime_seconds or 0
        )
        breach = await asyncio.to_thread(
            self.cases.db.find_similar_open, title, "health-monitoring", since
        )
        if breach is None:
            return None
        await self.cases.add_event(
            breach.id,
            {
                "message": f"Health check {event.check_name} recovered",
                "downtime_seconds": event.downtime_seconds,
            },
        )
        logger.info("Health check recovery recorded on case", breach_id=breach.id)
        return breach
