"""
Pytest configuration and shared fixtures.
"""

import pytest

from src.core.events import EventBus, Topic
from src.metrics.store import MetricStore
from tests.fakes import (
    FakeAlertDatabase,
    FakeAnomalyDatabase,
    FakeBreachDatabase,
    FakeClock,
    FakeEventDatabase,
    FakeHealthCheckDatabase,
    FakeMetricDatabase,
    RecordingSink,
)


@pytest.fixture
def clock():
    """Controllable clock starting at 2024-03-15 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def published(bus):
    """Every event published on the bus, in order."""
    events = []

    async def collect(event):
        events.append(event)

    for topic in Topic:
        bus.subscribe(topic, collect)
    return events


@pytest.fixture
def sink():
    return RecordingSink()


# Database fakes
@pytest.fixture
def metric_db():
    return FakeMetricDatabase()


@pytest.fixture
def event_db():
    return FakeEventDatabase()


@pytest.fixture
def anomaly_db():
    return FakeAnomalyDatabase()


@pytest.fixture
def alert_db():
    return FakeAlertDatabase()


@pytest.fixture
def health_db():
    return FakeHealthCheckDatabase()


@pytest.fixture
def breach_db():
    return FakeBreachDatabase()


@pytest.fixture
def metrics(metric_db, bus, clock):
    """MetricStore over the in-memory metric database."""
    return MetricStore(metric_db, bus=bus, clock=clock)
