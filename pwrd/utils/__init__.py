# pwrd/utils/__init__.py
"""Utility functions module."""
from .design import (
    CoefficientLayout,
    build_full_design,
    check_strata,
    formula_design,
    stratum_dummies,
    stratum_label,
    validate_columns,
)

__all__ = [
    "CoefficientLayout",
    "build_full_design",
    "check_strata",
    "formula_design",
    "stratum_dummies",
    "stratum_label",
    "validate_columns",
]
