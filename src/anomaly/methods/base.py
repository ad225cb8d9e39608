"""
Base interface for statistical anomaly detection methods.

A method is fitted on the flat list of aggregated training values into a
serializable Baseline, then scores individual current values against it.
"""

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any

import numpy as np


@dataclass
class DetectionResult:
    """Outcome of scoring one value against a baseline"""

    is_anomaly: bool
    score: float
    expected_value: float
    actual_value: float
    deviation: float
    severity: str
    details: dict[str, Any]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Baseline:
    """Trained statistics of one config (serializable for caching)"""

    method_name: str
    config_id: int | None
    metric_name: str
    statistics: dict[str, float]
    sample_size: int
    trained_at: str
    training_end: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Baseline":
        return cls(**data)


class AnomalyDetectionMethod(ABC):
    """Abstract base class for MAD, Z-score and IQR scoring"""

    # (score cutoff, severity) pairs checked in order; below every cutoff is 'low'
    SEVERITY_CUTOFFS: tuple[tuple[float, str], ...] = ()

    def __init__(self, sensitivity: float = 1.0):
        if sensitivity <= 0:
            raise ValueError("Sensitivity must be positive")
        self.sensitivity = float(sensitivity)

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def compute_statistics(self, values: np.ndarray) -> dict[str, float]:
        """Baseline statistics of the training values"""
        pass

    @abstractmethod
    def predict(self, value: float, baseline: Baseline) -> DetectionResult:
        pass

    def fit(
        self,
        values: Sequence[float],
        metric_name: str,
        config_id: int | None,
        trained_at: str,
        training_end: str,
    ) -> Baseline:
        array = self.validate_values(values)
        return Baseline(
            method_name=self.name,
            config_id=config_id,
            metric_name=metric_name,
            statistics=self.compute_statistics(array),
            sample_size=int(array.size),
            trained_at=trained_at,
            training_end=training_end,
        )

    def severity_for(self, score: float) -> str:
        for cutoff, severity in self.SEVERITY_CUTOFFS:
            if score > cutoff:
                return severity
        return "low"

    def get_config(self) -> dict[str, Any]:
        return {
            "sensitivity": self.sensitivity,
            "severity_cutoffs": [list(pair) for pair in self.SEVERITY_CUTOFFS],
        }

    @staticmethod
    def validate_values(values: Sequence[float]) -> np.ndarray:
        array = np.asarray(values, dtype=float)
        if array.size == 0:
            raise ValueError("Training series is empty")
        array = array[~np.isnan(array)]
        if array.size == 0:
            raise ValueError("Training series has no valid values")
        return array

    @staticmethod
    def ratio(deviation: float, spread: float) -> float:
        """deviation / spread, with a zero spread scoring any deviation as infinite"""
        if spread > 0:
            return deviation / spread
        return math.inf if deviation > 0 else 0.0

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(sensitivity={self.sensitivity})"
