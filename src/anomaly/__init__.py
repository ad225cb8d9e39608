"""
Statistical anomaly detection over recorded metrics.
"""

from .cache import BaselineCache
from .database import AnomalyDatabase
from .detector import AnomalyDetector
from .models import Algorithm, Anomaly, AnomalyDetectionConfig, AnomalyStatus

__all__ = [
    "Algorithm",
    "Anomaly",
    "AnomalyDatabase",
    "AnomalyDetectionConfig",
    "AnomalyDetector",
    "AnomalyStatus",
    "BaselineCache",
]
