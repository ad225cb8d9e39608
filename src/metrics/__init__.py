"""
Metric collection: dimensioned points, bucketed aggregation and usage counters.
"""

from .database import MetricDatabase
from .models import Aggregation, AggregatedValue, Bucket, MetricPoint, MetricType, TokenUsageStats
from .store import MetricStore, aggregate_points

__all__ = [
    "Aggregation",
    "AggregatedValue",
    "Bucket",
    "MetricDatabase",
    "MetricPoint",
    "MetricStore",
    "MetricType",
    "TokenUsageStats",
    "aggregate_points",
]
