"""
Median absolute deviation scoring.
"""

import numpy as np

from .base import AnomalyDetectionMethod, Baseline, DetectionResult

MAD_MULTIPLIER = 3.0


class MADMethod(AnomalyDetectionMethod):
    """Robust outlier scoring around the training median"""

    SEVERITY_CUTOFFS = ((5.0, "high"), (3.0, "medium"))

    @property
    def name(self) -> str:
        return "mad"

    def compute_statistics(self, values: np.ndarray) -> dict[str, float]:
        median = float(np.median(values))
        mad = float(np.median(np.abs(values - median)))
        return {"median": median, "mad": mad}

    def predict(self, value: float, baseline: Baseline) -> DetectionResult:
        median = baseline.statistics["median"]
        mad = baseline.statistics["mad"]

        deviation = abs(value - median)
        threshold = MAD_MULTIPLIER * mad * self.sensitivity
        score = self.ratio(deviation, mad)

        return DetectionResult(
            is_anomaly=deviation > threshold,
            score=score,
            expected_value=median,
            actual_value=value,
            deviation=deviation,
            severity=self.severity_for(score),
            details={"median": median, "mad": mad, "threshold": threshold},
        )
