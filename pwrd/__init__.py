"""pwrd: precision-weighted aggregation of stratum-level treatment effects.

This package estimates non-negative, normalized stratum weights from
control-group data (inverse CR2 covariance applied to baseline eligibility
rates) and tests the resulting weighted treatment effect with a CR2
cluster-robust t-test using Satterthwaite degrees of freedom.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "OLS",
    "BaseEstimator",
    "CoefficientLayout",
    "ContrastTest",
    "ContrastTestResult",
    "EstimationResult",
    "PWRDAnalysis",
    "PWRDConfig",
    "PWRDWeights",
    "WeightResult",
    "compute_weights",
    "cr2_vcov",
    "pwrd_test",
    "pwrd_weights_from_moments",
    "run_contrast_test",
    "simulate_stepped_wedge",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("pwrd.estimators.base", "BaseEstimator"),
    "EstimationResult": ("pwrd.estimators.base", "EstimationResult"),
    "PWRDConfig": ("pwrd.estimators.base", "PWRDConfig"),
    "OLS": ("pwrd.estimators.ols", "OLS"),
    "PWRDWeights": ("pwrd.estimators.weights", "PWRDWeights"),
    "WeightResult": ("pwrd.estimators.weights", "WeightResult"),
    "compute_weights": ("pwrd.estimators.weights", "compute_weights"),
    "pwrd_weights_from_moments": ("pwrd.estimators.weights", "pwrd_weights_from_moments"),
    "ContrastTest": ("pwrd.estimators.contrast", "ContrastTest"),
    "ContrastTestResult": ("pwrd.estimators.contrast", "ContrastTestResult"),
    "run_contrast_test": ("pwrd.estimators.contrast", "run_contrast_test"),
    "PWRDAnalysis": ("pwrd.estimators.pipeline", "PWRDAnalysis"),
    "pwrd_test": ("pwrd.estimators.pipeline", "pwrd_test"),
    "CoefficientLayout": ("pwrd.utils.design", "CoefficientLayout"),
    "cr2_vcov": ("pwrd.core.sandwich", "cr2_vcov"),
    "simulate_stepped_wedge": ("pwrd.sim.dgp", "simulate_stepped_wedge"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'pwrd' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
