"""
Tests for BreachRuleEngine rule evaluation and scheduling.
"""

from datetime import timedelta

import pytest

from src.anomaly.models import Anomaly, AnomalyStatus
from src.breach.cases import CaseStore
from src.breach.engine import BreachRuleEngine
from src.breach.models import BreachDetectionRule, BreachEventType
from src.core.errors import ConfigurationReferenceError, NotFoundError, ValidationError
from src.metrics.models import Bucket


@pytest.fixture
def cases(breach_db, metrics, bus, clock):
    return CaseStore(breach_db, metrics=metrics, bus=bus, clock=clock)


@pytest.fixture
def engine(breach_db, cases, metrics, anomaly_db, event_db, clock):
    return BreachRuleEngine(breach_db, cases, metrics, anomaly_db, event_db, clock=clock, first_run_delay=3600)


def stored_rule(breach_db, rule_type, definition, **extra) -> BreachDetectionRule:
    """Insert a rule without scheduling it."""
    rule = BreachDetectionRule.from_dict(
        {"name": f"{rule_type} rule", "rule_type": rule_type, "definition": definition, **extra}
    )
    rule.id = breach_db.insert_rule(rule)
    return rule


def add_anomaly(anomaly_db, clock, metric_name="api_requests", severity="high", score=4.2, **extra):
    anomaly = Anomaly(
        config_id=1,
        metric_name=metric_name,
        timestamp=clock(),
        value=900.0,
        expected_value=100.0,
        deviation=800.0,
        score=score,
        severity=severity,
        **extra,
    )
    anomaly.id = anomaly_db.insert_anomaly(anomaly)
    return anomaly


class TestSignatureRules:
    @pytest.mark.asyncio
    async def test_threshold_then_update(self, engine, breach_db, event_db, clock):
        """Two matching events open one case; a third appends evidence to it."""
        rule = stored_rule(
            breach_db,
            "signature",
            {"signatures": [{"type": "security_event", "pattern": {"event_type": "brute_force"}, "threshold": 2}]},
            severity="critical",
        )

        event_db.insert_security_event("brute_force", "high", clock(), client_id="c1")
        assert await engine.evaluate_rule(rule) == []

        clock.advance(minutes=1)
        event_db.insert_security_event("brute_force", "high", clock(), client_id="c1")
        event_db.insert_security_event("token_theft", "high", clock(), client_id="c1")
        [breach] = await engine.evaluate_rule(rule)

        assert breach.severity == "critical"
        assert breach.source == "signature-rule"
        assert breach.detection_type == "signature"
        assert breach.title == "signature rule"
        assert breach.description == "Signature rule triggered: signature rule"
        assert breach.evidence["match_count"] == 2
        assert breach.evidence["signature_type"] == "security_event"

        clock.advance(minutes=5)
        event_db.insert_security_event("brute_force", "high", clock(), client_id="c2")
        [updated] = await engine.evaluate_rule(rule)

        assert updated.id == breach.id
        assert len(breach_db.breaches) == 1
        update = breach_db.events[-1]
        assert update.event_type is BreachEventType.UPDATE
        assert update.details["message"] == "New evidence detected for signature rule"
        assert update.details["evidence"]["match_count"] == 3

    @pytest.mark.asyncio
    async def test_events_outside_window_ignored(self, engine, breach_db, event_db, clock):
        rule = stored_rule(
            breach_db,
            "signature",
            {"signatures": [{"type": "security_event", "pattern": {}}], "time_window": 30},
        )
        event_db.insert_security_event("brute_force", "high", clock() - timedelta(minutes=31))

        assert await engine.evaluate_rule(rule) == []

    @pytest.mark.asyncio
    async def test_ip_violation_signature(self, engine, breach_db, event_db, clock):
        rule = stored_rule(
            breach_db,
            "signature",
            {"signatures": [{"type": "ip_violation", "pattern": {"ip_address": "203.0.113.9"}, "threshold": 1}]},
        )
        event_db.insert_access_log("203.0.113.9", True, clock(), client_id="c1")
        event_db.insert_access_log("203.0.113.9", False, clock(), client_id="c1")

        [verdict] = await engine.check_rule(rule)

        assert verdict.triggered
        assert verdict.evidence["match_count"] == 1

    @pytest.mark.asyncio
    async def test_token_usage_signature(self, engine, breach_db, metric_db, clock):
        rule = stored_rule(
            breach_db,
            "signature",
            {"signatures": [{"type": "token_usage", "pattern": {"min_requests": 1000}}]},
        )
        metric_db.increment_usage("heavy", clock().date(), "api_requests", 1500)
        metric_db.increment_usage("light", clock().date(), "api_requests", 20)

        [verdict] = await engine.check_rule(rule)

        assert verdict.triggered
        assert [m["client_id"] for m in verdict.evidence["matches"]] == ["heavy"]

    @pytest.mark.asyncio
    async def test_one_case_per_triggered_signature(self, engine, breach_db, event_db, clock):
        rule = stored_rule(
            breach_db,
            "signature",
            {
                "signatures": [
                    {"type": "security_event", "pattern": {"event_type": "brute_force"}},
                    {"type": "security_event", "pattern": {"event_type": "missing"}},
                ]
            },
        )
        event_db.insert_security_event("brute_force", "high", clock())

        verdicts = await engine.check_rule(rule)

        assert [v.triggered for v in verdicts] == [True, False]


class TestBehaviorRules:
    """Tests for metric based behaviour rules."""

    @pytest.mark.asyncio
    async def test_simple_condition(self, engine, breach_db, metrics, clock):
        rule = stored_rule(
            breach_db,
            "behavior",
            {"metrics": ["failed_logins"], "condition": {"operator": ">="}, "threshold": 50},
        )
        await metrics.record("failed_logins", 30, bucket=Bucket.HOUR)
        assert await engine.evaluate_rule(rule) == []

        await metrics.record("failed_logins", 20, bucket=Bucket.HOUR)
        [breach] = await engine.evaluate_rule(rule)

        assert breach.evidence["actual_value"] == 50
        assert breach.evidence["metrics"] == {"failed_logins": 50}
        assert breach.evidence["operator"] == ">="

    @pytest.mark.asyncio
    async def test_boolean_expression(self, engine, breach_db, metrics):
        rule = stored_rule(
            breach_db,
            "behavior",
            {
                "metrics": ["failed_logins", "logins"],
                "condition": {"type": "expression", "expression": "{failed_logins} / {logins} > 0.5"},
            },
        )
        await metrics.record("failed_logins", 60)
        await metrics.record("logins", 100)

        [verdict] = await engine.check_rule(rule)

        assert verdict.triggered
        assert verdict.evidence["actual_value"] is True

    @pytest.mark.asyncio
    async def test_numeric_expression_compared_to_threshold(self, engine, breach_db, metrics):
        rule = stored_rule(
            breach_db,
            "behavior",
            {
                "metrics": ["failed_logins", "logins"],
                "condition": {"type": "expression", "expression": "{failed_logins} / {logins}", "operator": ">"},
                "threshold": 0.75,
            },
        )
        await metrics.record("failed_logins", 60)
        await metrics.record("logins", 100)

        [verdict] = await engine.check_rule(rule)

        assert not verdict.triggered
        assert verdict.evidence["actual_value"] == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_division_by_zero_is_configuration_error(self, engine, breach_db, metrics):
        rule = stored_rule(
            breach_db,
            "behavior",
            {
                "metrics": ["failed_logins", "logins"],
                "condition": {"type": "expression", "expression": "{failed_logins} / {logins} > 1"},
            },
        )

        with pytest.raises(ConfigurationReferenceError):
            await engine.check_rule(rule)
        # Scheduled runs log and carry on
        await engine._scheduled_evaluation(rule)

    @pytest.mark.asyncio
    async def test_other_bucket_not_counted(self, engine, breach_db, metrics):
        rule = stored_rule(breach_db, "behavior", {"metrics": ["failed_logins"], "threshold": 5})
        await metrics.record("failed_logins", 10, bucket=Bucket.MINUTE)

        [verdict] = await engine.check_rule(rule)

        assert not verdict.triggered


class TestAnomalyAndCorrelationRules:
    @pytest.mark.asyncio
    async def test_anomaly_rule(self, engine, breach_db, anomaly_db, clock):
        rule = stored_rule(breach_db, "anomaly", {"metrics": ["api_requests"], "severities": ["high"]})
        add_anomaly(anomaly_db, clock, severity="medium")
        add_anomaly(anomaly_db, clock, metric_name="token_requests")
        assert await engine.evaluate_rule(rule) == []

        add_anomaly(anomaly_db, clock)
        add_anomaly(anomaly_db, clock, status=AnomalyStatus.DISMISSED)
        [breach] = await engine.evaluate_rule(rule)

        assert len(breach.evidence["anomalies"]) == 1
        assert breach.evidence["metric_names"] == ["api_requests"]
        assert breach.source == "anomaly-rule"

    @pytest.mark.asyncio
    async def test_correlation_rule(self, engine, breach_db, event_db, anomaly_db, clock):
        rule = stored_rule(
            breach_db,
            "correlation",
            {
                "conditions": [
                    {"type": "security_event", "pattern": {"event_type": "brute_force"}, "name": "bruteforce"},
                    {"type": "ip_violation", "pattern": {"client_id": "c1"}},
                    {"type": "anomaly", "pattern": {"min_score": 5}},
                ],
                "threshold": 2,
            },
        )
        event_db.insert_security_event("brute_force", "high", clock(), client_id="c1")
        add_anomaly(anomaly_db, clock, score=7.5)
        [verdict] = await engine.check_rule(rule)
        assert verdict.triggered
        assert verdict.evidence["condition_results"] == [True, False, True]
        assert verdict.evidence["met_conditions"] == 2
        assert [e["type"] for e in verdict.evidence["evidence"]] == ["security_event", "anomaly"]
        assert verdict.evidence["evidence"][0]["name"] == "bruteforce"

    @pytest.mark.asyncio
    async def test_correlation_below_threshold(self, engine, breach_db, anomaly_db, clock):
        rule = stored_rule(
            breach_db,
            "correlation",
            {
                "conditions": [
                    {"type": "security_event", "pattern": {}},
                    {"type": "anomaly", "pattern": {"min_score": 5}},
                ]
            },
        )
        add_anomaly(anomaly_db, clock, score=4.9)

        [verdict] = await engine.check_rule(rule)

        assert not verdict.triggered
        assert verdict.evidence["met_conditions"] == 0


class TestRuleApi:
    """Tests for rule CRUD, testing and timers."""

    @pytest.mark.asyncio
    async def test_test_rule_writes_nothing(self, engine, breach_db, event_db, clock):
        rule = stored_rule(breach_db, "signature", {"signatures": [{"type": "security_event", "pattern": {}}]})
        event_db.insert_security_event("brute_force", "high", clock())

        [verdict] = await engine.test_rule(rule.id)

        assert verdict.triggered
        assert verdict.to_dict()["message"] == "New evidence detected for signature rule"
        assert breach_db.breaches == {}
        assert breach_db.events == []

    @pytest.mark.asyncio
    async def test_crud_and_timers(self, engine):
        rule = await engine.create_rule(
            {
                "name": "anomalies",
                "rule_type": "anomaly",
                "definition": {"evaluation_interval_minutes": 5},
            }
        )
        key = f"rule:{rule.id}"
        assert engine.scheduler.get(key).interval_seconds == 300

        updated = await engine.update_rule(rule.id, {"definition": {"evaluation_interval_minutes": 10}})
        assert updated.id == rule.id
        assert engine.scheduler.get(key).interval_seconds == 600

        await engine.update_rule(rule.id, {"enabled": False})
        assert not engine.scheduler.is_scheduled(key)

        with pytest.raises(ValidationError):
            await engine.update_rule(rule.id, {"priority": 1})
        with pytest.raises(ValidationError):
            await engine.update_rule(rule.id, {"severity": "urgent"})

        await engine.delete_rule(rule.id)
        with pytest.raises(NotFoundError):
            await engine.get_rule(rule.id)
        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_schedules_enabled_rules(self, engine, breach_db):
        enabled = stored_rule(breach_db, "anomaly", {})
        disabled = stored_rule(breach_db, "anomaly", {}, enabled=False)

        await engine.start()

        assert engine.scheduler.keys == [f"rule:{enabled.id}"]
        assert disabled.id != enabled.id
        assert await engine.list_rules(enabled_only=True) == [enabled]
        await engine.stop()
