"""
CaseStore: security case lifecycle, audit trail and indicator links.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Any

import structlog

from src.core.clock import Clock, utcnow
from src.core.errors import NotFoundError, ValidationError
from src.core.events import BreachDetected, EventBus
from src.metrics.models import Bucket, MetricType
from src.metrics.store import MetricStore

from .database import BreachDatabase
from .models import (
    SEVERITIES,
    SEVERITY_RANK,
    SIMILAR_CASE_WINDOW_HOURS,
    SORT_COLUMNS,
    Breach,
    BreachCandidate,
    BreachEvent,
    BreachEventType,
    BreachFilter,
    BreachPage,
    BreachStatus,
    Indicator,
    IndicatorLink,
)

logger = structlog.get_logger(__name__)

CASE_METRIC = "security_breaches"


class CaseStore:
    """Creates, merges and tracks security cases"""

    def __init__(
        self,
        db: BreachDatabase,
        metrics: MetricStore | None = None,
        bus: EventBus | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.metrics = metrics
        self.bus = bus
        self.clock = clock

    async def create_or_merge(self, candidate: BreachCandidate) -> Breach:
        """Open a new case, or append the evidence to a matching active one.

        Rule candidates match on rule id within the rule's window; other
        candidates match on title and source within the last 24 hours.
        """
        now = self.clock()
        if candidate.rule_id is not None:
            since = now - (candidate.dedup_window or timedelta(hours=SIMILAR_CASE_WINDOW_HOURS))
            existing = await asyncio.to_thread(
                self.db.find_rule_duplicate, candidate.rule_id, since
            )
        else:
            since = now - timedelta(hours=SIMILAR_CASE_WINDOW_HOURS)
            existing = await asyncio.to_thread(
                self.db.find_similar_open, candidate.title, candidate.source, since
            )

        if existing is not None:
            return await self._merge(existing, candidate)
        return await self._create(candidate)

    async def _create(self, candidate: BreachCandidate) -> Breach:
        now = self.clock()
        breach = Breach(
            title=candidate.title,
            description=candidate.description,
            detection_type=candidate.detection_type,
            severity=candidate.severity,
            source=candidate.source,
            detected_at=now,
            first_detected_at=now,
            evidence=candidate.evidence,
            rule_id=candidate.rule_id,
            workspace_id=candidate.workspace_id,
            affected_resources=list(candidate.affected_resources),
            updated_at=now,
        )
        breach_id = await asyncio.to_thread(self.db.insert_breach, breach)
        if breach_id is None:
            raise RuntimeError(f"Failed to store breach '{candidate.title}'")
        breach.id = breach_id

        await self._append(
            breach_id,
            BreachEventType.DETECTION,
            {"message": f"Breach detected: {candidate.title}", "source": candidate.source},
        )
        logger.warning(
            "Breach detected",
            breach_id=breach_id,
            title=breach.title,
            severity=breach.severity,
            source=breach.source,
        )

        if self.bus is not None:
            await self.bus.publish(
                BreachDetected(
                    breach_id=breach_id,
                    title=breach.title,
                    severity=breach.severity,
                    detection_type=breach.detection_type,
                    source=breach.source,
                    workspace_id=breach.workspace_id,
                )
            )
        if self.metrics is not None:
            await self.metrics.record(
                CASE_METRIC,
                1,
                bucket=Bucket.HOUR,
                dimensions={
                    "type": breach.detection_type,
                    "severity": breach.severity,
                    "source": breach.source,
                },
                metric_type=MetricType.COUNTER,
                source="breach-detection",
            )
        return breach

    async def _merge(self, existing: Breach, candidate: BreachCandidate) -> Breach:
        await self._append(
            existing.id,
            BreachEventType.UPDATE,
            {"message": candidate.message, "evidence": candidate.evidence},
        )
        if SEVERITY_RANK.get(candidate.severity, 0) > SEVERITY_RANK.get(existing.severity, 0):
            now = self.clock()
            await asyncio.to_thread(
                self.db.update_breach_fields, existing.id, now, severity=candidate.severity
            )
            existing = replace(existing, severity=candidate.severity, updated_at=now)
        logger.info("Breach updated with new evidence", breach_id=existing.id, title=existing.title)
        return existing

    async def _append(
        self,
        breach_id: int,
        event_type: BreachEventType,
        details: dict[str, Any],
        actor: str | None = None,
    ) -> BreachEvent:
        event = BreachEvent(
            breach_id=breach_id,
            event_type=event_type,
            timestamp=self.clock(),
            details=details,
            actor=actor,
        )
        event.id = await asyncio.to_thread(self.db.insert_event, event)
        return event

    # ========================================
    # Case API
    # ========================================

    async def get_breach(self, breach_id: int) -> Breach:
        breach = await asyncio.to_thread(self.db.get_breach, breach_id)
        if breach is None:
            raise NotFoundError("Breach", breach_id)
        return breach

    async def list_breaches(
        self,
        filters: BreachFilter | None = None,
        page: int = 1,
        limit: int = 25,
        sort_by: str = "detected_at",
        sort_order: str = "desc",
    ) -> BreachPage:
        if sort_by not in SORT_COLUMNS:
            raise ValidationError(f"sort_by must be one of {', '.join(SORT_COLUMNS)}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be asc or desc")
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        items, total = await asyncio.to_thread(
            self.db.list_breaches, filters or BreachFilter(), page, limit, sort_by, sort_order
        )
        return BreachPage(items=items, total=total, page=page, limit=limit)

    async def update_status(
        self, breach_id: int, status: BreachStatus | str, actor: str, notes: str | None = None
    ) -> Breach:
        breach = await self.get_breach(breach_id)
        try:
            status = BreachStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown breach status '{status}'") from None
        if status == breach.status:
            return breach

        now = self.clock()
        changes: dict[str, Any] = {"status": status.value}
        if status == BreachStatus.RESOLVED:
            changes.update(resolved_at=now, resolved_by=actor)
        await asyncio.to_thread(self.db.update_breach_fields, breach_id, now, **changes)
        await self._append(
            breach_id,
            BreachEventType.STATUS_CHANGE,
            {"from": breach.status.value, "to": status.value, "notes": notes},
            actor=actor,
        )
        logger.info("Breach status changed", breach_id=breach_id, status=status.value, actor=actor)
        return await self.get_breach(breach_id)

    async def assign(self, breach_id: int, assignee: str | None, actor: str) -> Breach:
        breach = await self.get_breach(breach_id)
        if assignee == breach.assigned_to:
            return breach
        await asyncio.to_thread(
            self.db.update_breach_fields, breach_id, self.clock(), assigned_to=assignee
        )
        await self._append(
            breach_id,
            BreachEventType.UPDATE,
            {"message": "Assignment changed", "from": breach.assigned_to, "to": assignee},
            actor=actor,
        )
        return await self.get_breach(breach_id)

    async def add_event(
        self, breach_id: int, details: dict[str, Any], actor: str | None = None
    ) -> BreachEvent:
        """Append a free-form update to a case"""
        await self.get_breach(breach_id)
        return await self._append(breach_id, BreachEventType.UPDATE, details, actor=actor)

    async def get_events(self, breach_id: int) -> list[BreachEvent]:
        await self.get_breach(breach_id)
        return await asyncio.to_thread(self.db.list_events, breach_id)

    async def stats(self, workspace_id: str | None = None) -> dict[str, Any]:
        """Counts by status, severity, detection type and source"""
        grouped = await asyncio.to_thread(self.db.breach_stats, workspace_id)
        by_status = grouped.get("status", {})
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_severity": {s: grouped.get("severity", {}).get(s, 0) for s in SEVERITIES},
            "by_detection_type": grouped.get("detection_type", {}),
            "by_source": grouped.get("source", {}),
        }

    # ========================================
    # Indicators
    # ========================================

    async def create_indicator(self, data: dict[str, Any]) -> Indicator:
        if not data.get("type") or not data.get("value"):
            raise ValidationError("indicators need a type and a value")
        severity = data.get("severity", "medium")
        if severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of {', '.join(SEVERITIES)}")
        indicator = Indicator(
            indicator_type=data["type"],
            value=str(data["value"]),
            severity=severity,
            source=data.get("source"),
            description=data.get("description"),
        )
        indicator.id = await asyncio.to_thread(self.db.insert_indicator, indicator)
        if indicator.id is None:
            raise RuntimeError(f"Failed to store indicator '{indicator.value}'")
        return indicator

    async def link_indicator(
        self, breach_id: int, indicator_id: int, confidence: float = 1.0, actor: str | None = None
    ) -> IndicatorLink:
        """Link an indicator to a case; re-linking updates the confidence"""
        if not 0 <= confidence <= 1:
            raise ValidationError("confidence must be between 0 and 1")
        await self.get_breach(breach_id)
        indicator = await asyncio.to_thread(self.db.get_indicator, indicator_id)
        if indicator is None:
            raise NotFoundError("Indicator", indicator_id)

        now = self.clock()
        created = await asyncio.to_thread(
            self.db.upsert_link, breach_id, indicator_id, confidence, actor, now
        )
        if created is None:
            raise RuntimeError(f"Failed to link indicator {indicator_id} to breach {breach_id}")
        await self._append(
            breach_id,
            BreachEventType.INDICATOR_LINKED,
            {
                "indicator_id": indicator_id,
                "type": indicator.indicator_type,
                "value": indicator.value,
                "confidence": confidence,
                "relinked": not created,
            },
            actor=actor,
        )
        return IndicatorLink(breach_id, indicator_id, confidence, linked_by=actor, linked_at=now)

    async def unlink_indicator(self, breach_id: int, indicator_id: int, actor: str | None = None) -> bool:
        removed = await asyncio.to_thread(self.db.delete_link, breach_id, indicator_id)
        if removed:
            await self._append(
                breach_id,
                BreachEventType.INDICATOR_UNLINKED,
                {"indicator_id": indicator_id},
                actor=actor,
            )
        return removed

    async def get_breach_indicators(self, breach_id: int) -> list[dict]:
        return await asyncio.to_thread(self.db.breach_indicators, breach_id)

    async def get_indicator_breaches(self, indicator_id: int) -> list[dict]:
        return await asyncio.to_thread(self.db.indicator_breaches, indicator_id)
