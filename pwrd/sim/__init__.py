"""Synthetic data generators."""
from .dgp import simulate_stepped_wedge, stepped_wedge_strata

__all__ = ["simulate_stepped_wedge", "stepped_wedge_strata"]
