"""Estimator exports with lazy loading.

Public estimator classes and result containers. Uses lazy imports to avoid
circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "OLS",
    "BaseEstimator",
    "ContrastTest",
    "ContrastTestResult",
    "EstimationResult",
    "PWRDAnalysis",
    "PWRDConfig",
    "PWRDWeights",
    "WeightResult",
    "compute_weights",
    "pwrd_test",
    "run_contrast_test",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("pwrd.estimators.base", "BaseEstimator"),
    "EstimationResult": ("pwrd.estimators.base", "EstimationResult"),
    "PWRDConfig": ("pwrd.estimators.base", "PWRDConfig"),
    "OLS": ("pwrd.estimators.ols", "OLS"),
    "PWRDWeights": ("pwrd.estimators.weights", "PWRDWeights"),
    "WeightResult": ("pwrd.estimators.weights", "WeightResult"),
    "compute_weights": ("pwrd.estimators.weights", "compute_weights"),
    "ContrastTest": ("pwrd.estimators.contrast", "ContrastTest"),
    "ContrastTestResult": ("pwrd.estimators.contrast", "ContrastTestResult"),
    "run_contrast_test": ("pwrd.estimators.contrast", "run_contrast_test"),
    "PWRDAnalysis": ("pwrd.estimators.pipeline", "PWRDAnalysis"),
    "pwrd_test": ("pwrd.estimators.pipeline", "pwrd_test"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'pwrd.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
