"""
Breach detection: scheduled rules, security cases and their audit trail.
"""

from .cases import CaseStore
from .database import BreachDatabase
from .engine import BreachRuleEngine, RuleVerdict
from .listeners import BreachListeners
from .models import (
    Breach,
    BreachCandidate,
    BreachDetectionRule,
    BreachEvent,
    BreachFilter,
    BreachStatus,
    RuleType,
)

__all__ = [
    "Breach",
    "BreachCandidate",
    "BreachDatabase",
    "BreachDetectionRule",
    "BreachEvent",
    "BreachFilter",
    "BreachListeners",
    "BreachRuleEngine",
    "BreachStatus",
    "CaseStore",
    "RuleType",
    "RuleVerdict",
]
