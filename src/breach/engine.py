"""
BreachRuleEngine: scheduled evaluation of breach detection rules.

Each enabled rule owns a timer at its evaluation interval. A rule run
produces verdicts; triggered verdicts become case candidates that the
CaseStore creates or merges into the rule's active case.
"""

import asyncio
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from typing import Any

import structlog

from src.anomaly.database import AnomalyDatabase
from src.anomaly.models import AnomalyStatus
from src.core.clock import Clock, utcnow
from src.core.comparison import compare
from src.core.errors import ConfigurationReferenceError, NotFoundError, ValidationError
from src.core.scheduler import TaskScheduler
from src.intake.database import EventDatabase
from src.metrics.store import MetricStore

from .cases import CaseStore
from .database import BreachDatabase
from .expression import evaluate_expression
from .models import (
    CORRELATION_SAMPLE_SIZE,
    FIRST_RUN_DELAY_SECONDS,
    SIGNATURE_SAMPLE_SIZE,
    AnomalyRuleDefinition,
    Breach,
    BreachCandidate,
    BreachDetectionRule,
    BehaviorDefinition,
    CorrelationDefinition,
    MatchFamily,
    SignatureDefinition,
)

logger = structlog.get_logger(__name__)

ANOMALY_SEARCH_LIMIT = 100


@dataclass
class RuleVerdict:
    triggered: bool
    evidence: dict[str, Any] = field(default_factory=dict)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"triggered": self.triggered, "evidence": self.evidence, "message": self.message}


class BreachRuleEngine:
    """Schedules and evaluates breach detection rules"""

    def __init__(
        self,
        db: BreachDatabase,
        cases: CaseStore,
        metrics: MetricStore,
        anomaly_db: AnomalyDatabase,
        event_db: EventDatabase,
        clock: Clock = utcnow,
        first_run_delay: float = FIRST_RUN_DELAY_SECONDS,
    ):
        self.db = db
        self.cases = cases
        self.metrics = metrics
        self.anomaly_db = anomaly_db
        self.event_db = event_db
        self.clock = clock
        self.first_run_delay = first_run_delay
        self.scheduler = TaskScheduler("breach-rules")

    async def start(self) -> None:
        rules = await asyncio.to_thread(self.db.list_rules, True)
        for rule in rules:
            self._reschedule(rule)
        logger.info("Breach rule engine started", rules=len(rules))

    async def stop(self) -> None:
        await self.scheduler.shutdown()

    def _reschedule(self, rule: BreachDetectionRule) -> None:
        key = f"rule:{rule.id}"
        if rule.enabled:
            self.scheduler.schedule(
                key,
                partial(self._scheduled_evaluation, rule),
                rule.interval_seconds,
                initial_delay=self.first_run_delay,
            )
        else:
            self.scheduler.cancel(key)

    async def _scheduled_evaluation(self, rule: BreachDetectionRule) -> None:
        try:
            await self.evaluate_rule(rule)
        except ConfigurationReferenceError as e:
            logger.error("Breach rule misconfigured", rule_id=rule.id, rule=rule.name, error=str(e))

    # ========================================
    # Rule API
    # ========================================

    async def create_rule(self, data: dict[str, Any]) -> BreachDetectionRule:
        rule = BreachDetectionRule.from_dict(data)
        rule_id = await asyncio.to_thread(self.db.insert_rule, rule)
        if rule_id is None:
            raise RuntimeError("Failed to store breach rule")
        rule.id = rule_id
        self._reschedule(rule)
        logger.info("Breach rule created", rule_id=rule_id, name=rule.name, type=rule.rule_type.value)
        return rule

    async def update_rule(self, rule_id: int, changes: dict[str, Any]) -> BreachDetectionRule:
        current = await self.get_rule(rule_id)
        data = current.to_dict()
        unknown = set(changes) - set(data)
        if unknown:
            raise ValidationError(f"Unknown rule fields: {sorted(unknown)}")
        data.update(changes)
        rule = replace(BreachDetectionRule.from_dict(data), id=rule_id)
        if not await asyncio.to_thread(self.db.update_rule, rule):
            raise RuntimeError(f"Failed to update breach rule {rule_id}")
        self._reschedule(rule)
        return rule

    async def delete_rule(self, rule_id: int) -> None:
        await self.get_rule(rule_id)
        self.scheduler.cancel(f"rule:{rule_id}")
        await asyncio.to_thread(self.db.delete_rule, rule_id)

    async def get_rule(self, rule_id: int) -> BreachDetectionRule:
        rule = await asyncio.to_thread(self.db.get_rule, rule_id)
        if rule is None:
            raise NotFoundError("Breach rule", rule_id)
        return rule

    async def list_rules(
        self, enabled_only: bool = False, workspace_id: str | None = None
    ) -> list[BreachDetectionRule]:
        return await asyncio.to_thread(self.db.list_rules, enabled_only, workspace_id)

    async def test_rule(self, rule_id: int) -> list[RuleVerdict]:
        """Evaluate a stored rule without opening or updating cases"""
        return await self.check_rule(await self.get_rule(rule_id))

    # ========================================
    # Evaluation
    # ========================================

    async def evaluate_rule(self, rule: BreachDetectionRule) -> list[Breach]:
        """Run one rule and turn every triggered verdict into a case"""
        breaches = []
        for verdict in await self.check_rule(rule):
            if not verdict.triggered:
                continue
            candidate = BreachCandidate(
                title=rule.name,
                description=rule.description or f"{rule.rule_type.value.capitalize()} rule triggered: {rule.name}",
                detection_type=rule.rule_type.value,
                severity=rule.severity,
                source=rule.source,
                evidence=verdict.evidence,
                message=verdict.message,
                rule_id=rule.id,
                dedup_window=rule.time_window,
                workspace_id=rule.workspace_id,
            )
            breaches.append(await self.cases.create_or_merge(candidate))
        logger.debug("Breach rule evaluated", rule_id=rule.id, triggered=len(breaches))
        return breaches

    async def check_rule(self, rule: BreachDetectionRule) -> list[RuleVerdict]:
        now = self.clock()
        start = now - rule.time_window
        definition = rule.definition
        if isinstance(definition, BehaviorDefinition):
            return [await self._check_behavior(definition, start, now)]
        if isinstance(definition, SignatureDefinition):
            return await self._check_signatures(definition, start, now)
        if isinstance(definition, AnomalyRuleDefinition):
            return [await self._check_anomalies(definition, start)]
        if isinstance(definition, CorrelationDefinition):
            return [await self._check_correlation(definition, start, now)]
        raise ConfigurationReferenceError(f"Unsupported rule definition {type(definition).__name__}")

    async def _check_behavior(
        self, definition: BehaviorDefinition, start: datetime, end: datetime
    ) -> RuleVerdict:
        values = {}
        for metric in definition.metrics:
            values[metric.name] = await self.metrics.total(
                metric.name,
                start=start,
                end=end,
                bucket=definition.bucket,
                aggregation=metric.aggregation,
            )

        if definition.expression is not None:
            result = evaluate_expression(definition.expression, values)
        else:
            result = values[definition.metric]

        if isinstance(result, bool):
            triggered = result
        else:
            triggered = compare(result, definition.operator, definition.threshold)
        return RuleVerdict(
            triggered=triggered,
            evidence={
                "metrics": values,
                "condition": definition.expression or definition.metric,
                "operator": definition.operator.value,
                "threshold": definition.threshold,
                "actual_value": result,
            },
            message="New evidence detected for behavior rule",
        )

    async def _find_matches(
        self, family: MatchFamily, pattern: dict[str, Any], start: datetime, end: datetime
    ) -> list[dict]:
        if family == MatchFamily.SECURITY_EVENT:
            return await asyncio.to_thread(
                self.event_db.find_security_events,
                start=start,
                end=end,
                event_type=pattern.get("event_type"),
                severity=pattern.get("severity"),
                client_id=pattern.get("client_id"),
            )
        if family == MatchFamily.IP_VIOLATION:
            return await asyncio.to_thread(
                self.event_db.find_access_violations,
                start=start,
                end=end,
                client_id=pattern.get("client_id"),
                ip_address=pattern.get("ip_address"),
            )
        if family == MatchFamily.TOKEN_USAGE:
            days = max(1, math.ceil((end - start).total_seconds() / 86400))
            usage = await self.metrics.get_token_usage(pattern.get("client_id"), days=days)
            low, high = pattern.get("min_requests"), pattern.get("max_requests")
            return [
                stats.to_dict()
                for stats in usage
                if (low is None or stats.api_requests >= low)
                and (high is None or stats.api_requests <= high)
            ]
        if family == MatchFamily.ANOMALY:
            anomalies = await asyncio.to_thread(
                self.anomaly_db.list_anomalies,
                status=AnomalyStatus.OPEN,
                since=start,
                metric_names=[pattern["metric_name"]] if pattern.get("metric_name") else None,
                severities=[pattern["severity"]] if pattern.get("severity") else None,
                limit=ANOMALY_SEARCH_LIMIT,
            )
            min_score = pattern.get("min_score")
            return [
                anomaly.to_dict()
                for anomaly in anomalies
                if min_score is None or anomaly.score >= min_score
            ]
        raise ConfigurationReferenceError(f"Unsupported match type {family}")

    async def _check_signatures(
        self, definition: SignatureDefinition, start: datetime, end: datetime
    ) -> list[RuleVerdict]:
        verdicts = []
        for signature in definition.signatures:
            matches = await self._find_matches(signature.family, signature.pattern, start, end)
            verdicts.append(
                RuleVerdict(
                    triggered=len(matches) >= signature.threshold,
                    evidence={
                        "signature_type": signature.family.value,
                        "matches": matches[:SIGNATURE_SAMPLE_SIZE],
                        "match_count": len(matches),
                        "pattern": signature.pattern,
                    },
                    message="New evidence detected for signature rule",
                )
            )
        return verdicts

    async def _check_anomalies(self, definition: AnomalyRuleDefinition, start: datetime) -> RuleVerdict:
        anomalies = await asyncio.to_thread(
            self.anomaly_db.list_anomalies,
            status=AnomalyStatus.OPEN,
            since=start,
            metric_names=definition.metrics or None,
            severities=definition.severities or None,
            limit=ANOMALY_SEARCH_LIMIT,
        )
        return RuleVerdict(
            triggered=bool(anomalies),
            evidence={
                "anomalies": [anomaly.to_dict() for anomaly in anomalies],
                "metric_names": sorted({anomaly.metric_name for anomaly in anomalies}),
                "time_window": definition.time_window,
            },
            message="New anomalies detected",
        )

    async def _check_correlation(
        self, definition: CorrelationDefinition, start: datetime, end: datetime
    ) -> RuleVerdict:
        results = []
        evidence = []
        for condition in definition.conditions:
            matches = await self._find_matches(condition.family, condition.pattern, start, end)
            met = len(matches) >= condition.threshold
            results.append(met)
            if met:
                evidence.append(
                    {
                        "type": condition.family.value,
                        "name": condition.name,
                        "matches": matches[:CORRELATION_SAMPLE_SIZE],
                        "match_count": len(matches),
                        "pattern": condition.pattern,
                    }
                )
        met_count = sum(results)
        return RuleVerdict(
            triggered=met_count >= definition.threshold,
            evidence={
                "condition_results": results,
                "met_conditions": met_count,
                "threshold": definition.threshold,
                "evidence": evidence,
            },
            message="New correlation evidence detected",
        )
