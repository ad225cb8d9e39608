"""
Process-level wiring of the monitoring components.
"""

from .models import EngineConfig
from .service import MonitoringEngine

__all__ = ["EngineConfig", "MonitoringEngine"]
