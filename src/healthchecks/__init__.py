"""
Scheduled health probes with failure and recovery detection.
"""

from .database import HealthCheckDatabase
from .models import CheckType, HealthCheckDefinition, HealthCheckResult, Outcome
from .probes import DatabaseProbe, HttpProbe, ScriptProbe, TcpProbe
from .scheduler import HealthCheckScheduler

__all__ = [
    "CheckType",
    "DatabaseProbe",
    "HealthCheckDatabase",
    "HealthCheckDefinition",
    "HealthCheckResult",
    "HealthCheckScheduler",
    "HttpProbe",
    "Outcome",
    "ScriptProbe",
    "TcpProbe",
]
