"""
Tests for AnomalyDetector runs, deduplication and lifecycle.
"""

from datetime import timedelta

import pytest

from src.anomaly.detector import AnomalyDetector
from src.anomaly.models import AnomalyStatus
from src.core.errors import NotFoundError, ValidationError
from src.core.events import Topic
from src.metrics.models import MetricPoint


def seed_series(metric_db, now, subject="c1", training_value=10.0, outlier=100.0):
    """Three days of constant hourly training data plus one outlier two hours ago."""
    training_end = now - timedelta(days=1)
    for hours in range(1, 73):
        metric_db.insert_point(
            MetricPoint("failed_logins", training_value, training_end - timedelta(hours=hours), subject=subject)
        )
    metric_db.insert_point(MetricPoint("failed_logins", outlier, now - timedelta(hours=2), subject=subject))


@pytest.fixture
def detector(anomaly_db, metrics, bus, event_db, clock):
    return AnomalyDetector(anomaly_db, metrics, bus=bus, event_db=event_db, clock=clock)


class TestAnomalyDetection:
    """Tests for detection runs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", ["mad", "zscore", "iqr"])
    async def test_single_outlier_recorded_once(self, detector, metric_db, anomaly_db, clock, algorithm):
        """One outlier gives one anomaly; a second run in the same hour is deduplicated."""
        seed_series(metric_db, clock())
        config = await detector.create_config(
            {"metric_name": "failed_logins", "algorithm": algorithm, "subject": "c1"}
        )

        first = await detector.run_config(config)
        clock.advance(minutes=20)
        second = await detector.run_config(config)

        assert len(first) == 1
        assert second == []
        assert len(anomaly_db.anomalies) == 1

        anomaly = first[0]
        assert anomaly.value == 100.0
        assert anomaly.severity == "high"
        assert anomaly.status is AnomalyStatus.OPEN
        assert anomaly.timestamp == (clock() - timedelta(minutes=20, hours=2)).replace(minute=0)

    @pytest.mark.asyncio
    async def test_anomaly_published_and_events_linked(self, detector, metric_db, event_db, clock, published):
        """Nearby security events of the same subject are linked and the anomaly is published."""
        now = clock()
        seed_series(metric_db, now)
        bucket_start = (now - timedelta(hours=2)).replace(minute=0)
        nearby = event_db.insert_security_event("brute_force", "high", bucket_start + timedelta(minutes=5), client_id="c1")
        event_db.insert_security_event("brute_force", "high", bucket_start + timedelta(minutes=40), client_id="c1")
        event_db.insert_security_event("brute_force", "high", bucket_start, client_id="c2")

        config = await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})
        [anomaly] = await detector.run_config(config)

        assert anomaly.linked_event_ids == [nearby]
        events = [e for e in published if e.topic is Topic.ANOMALY_DETECTED]
        assert len(events) == 1
        assert events[0].anomaly_id == anomaly.id
        assert events[0].subject == "c1"

    @pytest.mark.asyncio
    async def test_normal_value_not_recorded(self, detector, metric_db, clock):
        """A current value equal to the baseline is not anomalous."""
        seed_series(metric_db, clock(), outlier=10.0)
        config = await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})

        assert await detector.run_config(config) == []

    @pytest.mark.asyncio
    async def test_empty_window_skips_training(self, detector, anomaly_db):
        """Without data the run is skipped and last_trained_at stays unset."""
        config = await detector.create_config({"metric_name": "failed_logins"})

        assert await detector.run_config(config) == []
        assert anomaly_db.configs[config.id].last_trained_at is None

    @pytest.mark.asyncio
    async def test_successful_run_marks_trained(self, detector, metric_db, anomaly_db, clock):
        seed_series(metric_db, clock())
        config = await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})

        await detector.run_config(config)

        assert anomaly_db.configs[config.id].last_trained_at == clock()

    @pytest.mark.asyncio
    async def test_run_all_isolates_failures(self, detector, metric_db, anomaly_db, clock):
        """A failing config does not prevent the others from running."""
        seed_series(metric_db, clock())
        await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})
        broken = await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})
        anomaly_db.configs[broken.id].algorithm = "unknown"

        recorded = await detector.run_all()

        assert recorded == 1
        assert detector.stats["failures"] == 1

    @pytest.mark.asyncio
    async def test_test_config_does_not_record(self, detector, metric_db, anomaly_db, clock):
        """test_config scores without writing anomalies."""
        seed_series(metric_db, clock())
        config = await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})

        candidates = await detector.test_config(config.id)

        assert [c.result.is_anomaly for c in candidates] == [True]
        assert anomaly_db.anomalies == {}


class TestAnomalyConfigApi:
    """Tests for config CRUD and anomaly lifecycle."""

    @pytest.mark.asyncio
    async def test_create_validates(self, detector):
        with pytest.raises(ValidationError):
            await detector.create_config({"metric_name": "x", "algorithm": "prophet"})
        with pytest.raises(ValidationError):
            await detector.create_config({"metric_name": "x", "sensitivity": 0})

    @pytest.mark.asyncio
    async def test_update_and_delete(self, detector):
        config = await detector.create_config({"metric_name": "x"})

        updated = await detector.update_config(config.id, {"sensitivity": 2.5})
        assert updated.sensitivity == 2.5

        await detector.delete_config(config.id)
        with pytest.raises(NotFoundError):
            await detector.get_config(config.id)

    @pytest.mark.asyncio
    async def test_update_anomaly_status(self, detector, metric_db, clock):
        seed_series(metric_db, clock())
        config = await detector.create_config({"metric_name": "failed_logins", "subject": "c1"})
        [anomaly] = await detector.run_config(config)

        acknowledged = await detector.update_anomaly_status(anomaly.id, "acknowledged")

        assert acknowledged.status is AnomalyStatus.ACKNOWLEDGED
        assert await detector.list_anomalies(status=AnomalyStatus.OPEN) == []
        with pytest.raises(ValidationError):
            await detector.update_anomaly_status(anomaly.id, "closed")
