"""
Tests for the statistical detection methods.
"""

import math

import pytest

from src.anomaly.methods import get_method, list_methods
from src.anomaly.methods.iqr import IQRMethod
from src.anomaly.methods.mad import MADMethod
from src.anomaly.methods.zscore import ZScoreMethod


def _fit(method, values):
    return method.fit(values, metric_name="m", config_id=1, trained_at="t", training_end="e")


class TestMethodRegistry:
    """Tests for method lookup."""

    def test_get_method(self):
        """Algorithms resolve to their implementation with the given sensitivity."""
        method = get_method("zscore", 2.0)
        assert isinstance(method, ZScoreMethod)
        assert method.sensitivity == 2.0

    def test_unknown_method(self):
        """Unknown algorithms are rejected."""
        with pytest.raises(ValueError):
            get_method("prophet")

    def test_list_methods(self):
        assert set(list_methods()) >= {"mad", "zscore", "iqr"}


class TestMADMethod:
    """Tests for MAD scoring."""

    def test_statistics(self):
        """Median and median absolute deviation of the training series."""
        baseline = _fit(MADMethod(), [1, 2, 3, 4, 100])
        assert baseline.statistics == {"median": 3.0, "mad": 1.0}

    def test_outlier_scoring(self):
        """Score is the deviation in MAD units."""
        baseline = _fit(MADMethod(), [1, 2, 3, 4, 100])

        result = MADMethod().predict(7.0, baseline)
        assert result.is_anomaly is True
        assert result.score == pytest.approx(4.0)
        assert result.severity == "medium"

        assert MADMethod().predict(5.0, baseline).is_anomaly is False

    def test_zero_spread(self):
        """Constant training series make any deviation infinitely anomalous."""
        baseline = _fit(MADMethod(), [10, 10, 10])

        result = MADMethod().predict(11, baseline)
        assert result.is_anomaly is True
        assert math.isinf(result.score)
        assert result.severity == "high"

        assert MADMethod().predict(10, baseline).is_anomaly is False


class TestZScoreMethod:
    """Tests for z-score scoring."""

    def test_uses_population_std(self):
        """Standard deviation is the population one."""
        baseline = _fit(ZScoreMethod(), [2, 4, 4, 4, 5, 5, 7, 9])
        assert baseline.statistics == {"mean": 5.0, "std": 2.0}

    def test_severity_cutoffs(self):
        """Scores above 5 are high, above 3 medium."""
        baseline = _fit(ZScoreMethod(), [2, 4, 4, 4, 5, 5, 7, 9])

        assert ZScoreMethod().predict(17, baseline).severity == "high"
        medium = ZScoreMethod().predict(13, baseline)
        assert medium.is_anomaly is True
        assert medium.severity == "medium"
        assert medium.deviation == 8.0
        assert ZScoreMethod().predict(9, baseline).is_anomaly is False

    def test_negative_deviation(self):
        """Low outliers keep a signed deviation and a positive score."""
        baseline = _fit(ZScoreMethod(), [2, 4, 4, 4, 5, 5, 7, 9])
        result = ZScoreMethod().predict(-5, baseline)
        assert result.deviation == -10.0
        assert result.score == 5.0


class TestIQRMethod:
    """Tests for interquartile range fences."""

    def test_quartiles_by_index(self):
        """Quartiles are taken by index into the sorted series."""
        baseline = _fit(IQRMethod(), [8, 1, 2, 3, 4, 5, 6, 7])
        assert baseline.statistics == {"q1": 3.0, "q3": 7.0, "iqr": 4.0}

    def test_upper_and_lower_fences(self):
        """Values beyond 1.5 IQR of the quartiles are anomalous."""
        baseline = _fit(IQRMethod(), [1, 2, 3, 4, 5, 6, 7, 8])

        high = IQRMethod().predict(20, baseline)
        assert high.is_anomaly is True
        assert high.expected_value == 7.0
        assert high.score == pytest.approx(13 / 4)
        assert high.severity == "high"

        low = IQRMethod().predict(-5, baseline)
        assert low.is_anomaly is True
        assert low.expected_value == 3.0

        assert IQRMethod().predict(12, baseline).is_anomaly is False
