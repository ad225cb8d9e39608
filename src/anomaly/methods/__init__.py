"""
Anomaly detection methods registry and factory.
"""

from ..models import Algorithm
from .base import AnomalyDetectionMethod, Baseline, DetectionResult
from .iqr import IQRMethod
from .mad import MADMethod
from .zscore import ZScoreMethod

METHOD_REGISTRY: dict[Algorithm, type[AnomalyDetectionMethod]] = {
    Algorithm.MAD: MADMethod,
    Algorithm.ZSCORE: ZScoreMethod,
    Algorithm.IQR: IQRMethod,
}


def get_method(algorithm: Algorithm | str, sensitivity: float = 1.0) -> AnomalyDetectionMethod:
    """Factory to create a detection method

    Raises:
        ValueError: If the algorithm is not registered
    """
    try:
        key = Algorithm(algorithm)
    except ValueError:
        available = ", ".join(a.value for a in METHOD_REGISTRY)
        raise ValueError(f"Unknown method '{algorithm}'. Available methods: {available}") from None

    return METHOD_REGISTRY[key](sensitivity)


def list_methods() -> list[str]:
    return [a.value for a in METHOD_REGISTRY]


__all__ = [
    "AnomalyDetectionMethod",
    "Baseline",
    "DetectionResult",
    "IQRMethod",
    "MADMethod",
    "ZScoreMethod",
    "get_method",
    "list_methods",
]
