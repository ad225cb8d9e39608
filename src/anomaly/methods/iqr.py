"""
Interquartile range fences.
"""

import numpy as np

from .base import AnomalyDetectionMethod, Baseline, DetectionResult

FENCE_MULTIPLIER = 1.5


class IQRMethod(AnomalyDetectionMethod):
    """Tukey fences around index-based quartiles"""

    SEVERITY_CUTOFFS = ((3.0, "high"), (2.0, "medium"))

    @property
    def name(self) -> str:
        return "iqr"

    def compute_statistics(self, values: np.ndarray) -> dict[str, float]:
        ordered = np.sort(values)
        n = ordered.size
        q1 = float(ordered[int(n * 0.25)])
        q3 = float(ordered[int(n * 0.75)])
        return {"q1": q1, "q3": q3, "iqr": q3 - q1}

    def predict(self, value: float, baseline: Baseline) -> DetectionResult:
        q1 = baseline.statistics["q1"]
        q3 = baseline.statistics["q3"]
        iqr = baseline.statistics["iqr"]

        lower = q1 - FENCE_MULTIPLIER * iqr * self.sensitivity
        upper = q3 + FENCE_MULTIPLIER * iqr * self.sensitivity
        expected = q1 if value < lower else q3
        deviation = abs(value - expected)
        score = self.ratio(deviation, iqr)

        return DetectionResult(
            is_anomaly=value < lower or value > upper,
            score=score,
            expected_value=expected,
            actual_value=value,
            deviation=deviation,
            severity=self.severity_for(score),
            details={"q1": q1, "q3": q3, "iqr": iqr, "lower_fence": lower, "upper_fence": upper},
        )
