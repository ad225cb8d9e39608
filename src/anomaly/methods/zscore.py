"""
Z-score scoring against the training mean.
"""

import math

import numpy as np

from .base import AnomalyDetectionMethod, Baseline, DetectionResult

Z_THRESHOLD = 3.0


class ZScoreMethod(AnomalyDetectionMethod):
    SEVERITY_CUTOFFS = ((5.0, "high"), (3.0, "medium"))

    @property
    def name(self) -> str:
        return "zscore"

    def compute_statistics(self, values: np.ndarray) -> dict[str, float]:
        # Population standard deviation
        return {"mean": float(np.mean(values)), "std": float(np.std(values))}

    def predict(self, value: float, baseline: Baseline) -> DetectionResult:
        mean = baseline.statistics["mean"]
        std = baseline.statistics["std"]

        deviation = value - mean
        score = self.ratio(abs(deviation), std)
        threshold = Z_THRESHOLD * self.sensitivity
        z_score = math.copysign(score, deviation) if score else 0.0

        return DetectionResult(
            is_anomaly=score > threshold,
            score=score,
            expected_value=mean,
            actual_value=value,
            deviation=deviation,
            severity=self.severity_for(score),
            details={"mean": mean, "std": std, "z_score": z_score, "threshold": threshold},
        )
