"""
Threshold alerting over recorded metrics.
"""

from .database import AlertDatabase
from .engine import AlertEngine
from .models import AlertDefinition, AlertHistory, Channel

__all__ = ["AlertDatabase", "AlertDefinition", "AlertEngine", "AlertHistory", "Channel"]
