"""
Tests for breach rule definitions and their validation.
"""

import pytest

from src.breach.models import (
    AnomalyRuleDefinition,
    BehaviorDefinition,
    BreachDetectionRule,
    BreachPage,
    CorrelationDefinition,
    MatchFamily,
    RuleType,
    SignatureDefinition,
)
from src.core.comparison import Operator
from src.core.errors import ValidationError
from src.metrics.models import Aggregation, Bucket


def rule_data(rule_type: str, definition: dict, **extra) -> dict:
    return {"name": "rule", "rule_type": rule_type, "definition": definition, **extra}


class TestBehaviorDefinition:
    def test_simple_defaults(self):
        definition = BehaviorDefinition.from_dict({"metrics": ["failed_logins"], "threshold": 10})

        assert definition.metric == "failed_logins"
        assert definition.expression is None
        assert definition.operator is Operator.GT
        assert definition.bucket is Bucket.HOUR
        assert definition.time_window == 60
        assert definition.evaluation_interval_minutes == 15
        assert definition.metrics[0].aggregation is Aggregation.SUM

    def test_expression(self):
        definition = BehaviorDefinition.from_dict(
            {
                "metrics": [{"name": "failed"}, {"name": "total", "aggregation": "max"}],
                "condition": {"type": "expression", "expression": "{failed} / {total} > 0.5"},
            }
        )

        assert definition.expression == "{failed} / {total} > 0.5"
        assert definition.metrics[1].aggregation is Aggregation.MAX

    def test_expression_with_unlisted_metric(self):
        with pytest.raises(ValidationError, match="other"):
            BehaviorDefinition.from_dict(
                {"metrics": ["failed"], "condition": {"type": "expression", "expression": "{other} > 1"}}
            )

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"metrics": []},
            {"metrics": [{"aggregation": "sum"}]},
            {"metrics": [{"name": "a", "aggregation": "median"}]},
            {"metrics": ["a"], "condition": {"metric": "b"}},
            {"metrics": ["a"], "condition": {"type": "script"}},
            {"metrics": ["a"], "condition": {"operator": "=>"}},
            {"metrics": ["a"], "time_window": 0},
            {"metrics": ["a"], "bucket": "fortnight"},
            {"metrics": ["a"], "condition": "{a} > 1"},
            {"metrics": ["a"], "condition": {"type": "expression", "expression": "{a} >"}},
            {"metrics": ["a"], "condition": {"type": "expression", "expression": "__import__('os')"}},
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            BehaviorDefinition.from_dict(data)


class TestSignatureDefinition:
    def test_parse(self):
        definition = SignatureDefinition.from_dict(
            {
                "signatures": [
                    {"type": "security_event", "pattern": {"event_type": "brute_force"}, "threshold": 2},
                    {"type": "token_usage", "pattern": {"min_requests": 1000}},
                ]
            }
        )

        assert [s.family for s in definition.signatures] == [MatchFamily.SECURITY_EVENT, MatchFamily.TOKEN_USAGE]
        assert definition.signatures[1].threshold == 1

    @pytest.mark.parametrize(
        "signature",
        [
            {"type": "anomaly", "pattern": {}},
            {"type": "security_event", "pattern": {"event_name": "x"}},
            {"type": "token_usage", "pattern": {"min_requests": "many"}},
            {"type": "ip_violation", "pattern": [], "threshold": 1},
            {"type": "ip_violation", "threshold": 0},
        ],
    )
    def test_invalid(self, signature):
        with pytest.raises(ValidationError):
            SignatureDefinition.from_dict({"signatures": [signature]})


class TestOtherDefinitions:
    def test_anomaly_definition(self):
        definition = AnomalyRuleDefinition.from_dict({"metrics": ["api_requests"], "severities": ["high"]})
        assert definition.metrics == ["api_requests"]

        with pytest.raises(ValidationError):
            AnomalyRuleDefinition.from_dict({"severities": ["critical"]})

    def test_correlation_threshold_defaults_to_all_conditions(self):
        definition = CorrelationDefinition.from_dict(
            {
                "conditions": [
                    {"type": "security_event", "pattern": {"event_type": "brute_force"}},
                    {"type": "anomaly", "pattern": {"min_score": 3}},
                ]
            }
        )
        assert definition.threshold == 2

    def test_correlation_threshold_bounds(self):
        with pytest.raises(ValidationError):
            CorrelationDefinition.from_dict(
                {"conditions": [{"type": "ip_violation", "pattern": {}}], "threshold": 2}
            )
        with pytest.raises(ValidationError):
            CorrelationDefinition.from_dict({"conditions": [{"type": "token_usage", "pattern": {}}]})


class TestRule:
    """Tests for the rule envelope."""

    def test_round_trip_through_dict(self):
        rule = BreachDetectionRule.from_dict(
            rule_data(
                "behavior",
                {
                    "metrics": ["failed", "total"],
                    "condition": {"type": "expression", "expression": "{failed} > {total}"},
                    "evaluation_interval_minutes": 5,
                },
                severity="high",
            )
        )

        again = BreachDetectionRule.from_dict(rule.to_dict())

        assert again == rule
        assert rule.interval_seconds == 300
        assert rule.source == "behavior-rule"
        assert rule.is_global

    def test_signature_round_trip(self):
        rule = BreachDetectionRule.from_dict(
            rule_data("signature", {"signatures": [{"type": "ip_violation", "pattern": {"ip_address": "1.2.3.4"}}]})
        )
        assert BreachDetectionRule.from_dict(rule.to_dict()) == rule

    @pytest.mark.parametrize(
        "data",
        [
            rule_data("heuristic", {}),
            rule_data("anomaly", {}, severity="urgent"),
            rule_data("anomaly", {}, owner="bob"),
            rule_data("anomaly", None),
            {"rule_type": "anomaly", "definition": {}},
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            BreachDetectionRule.from_dict(data)

    def test_from_row(self):
        rule = BreachDetectionRule.from_row(
            {
                "id": 7,
                "name": "anomalies",
                "type": "anomaly",
                "definition": {"metrics": ["api_requests"], "time_window": 30},
                "severity": "low",
                "enabled": False,
                "workspace_id": "ws-1",
            }
        )

        assert rule.id == 7
        assert rule.rule_type is RuleType.ANOMALY
        assert rule.time_window.total_seconds() == 1800
        assert not rule.is_global


def test_page_count():
    assert BreachPage(items=[], total=51, page=1, limit=25).pages == 3
    assert BreachPage(items=[], total=0, page=1, limit=25).pages == 0
