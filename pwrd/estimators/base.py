"""Base classes and pipeline configuration.

This module defines the abstract base estimator, the configuration shared by
the weighting and contrast-test stages, and the standardized estimation
results container.
"""

# pwrd/estimators/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pandas as pd

from pwrd.core.inference import ALTERNATIVES
from pwrd.utils.design import stratum_label

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Sequence

__all__ = [
    "BaseEstimator",
    "EstimationResult",
    "PWRDConfig",
]

_RANK_POLICIES = ("r", "stata")


# ---------------------------------------------------------------------
# Results container (R/Stata-like), extensible and estimator-agnostic
# ---------------------------------------------------------------------
@dataclass
class EstimationResult:
    """Container for estimation results.

    Stores parameter estimates, CR2 standard errors and covariance (when a
    clustering variable was supplied), and fit artifacts in ``extra``.
    """

    params: pd.Series
    se: pd.Series | None = None
    vcov: pd.DataFrame | None = None
    n_obs: int | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"EstimationResult(k={len(self.params)}, n={self.n_obs}, {head})"

    @property
    def var_names(self) -> list[str]:
        return [str(nm) for nm in self.params.index]

    def summary_frame(self) -> pd.DataFrame:
        """Coefficient table with estimate, CR2 SE and Satterthwaite df columns."""
        out = pd.DataFrame({"estimate": self.params})
        if self.se is not None:
            out["se"] = self.se
            out["t"] = self.params / self.se
        df = self.extra.get("df_satterthwaite")
        if df is not None:
            out["df"] = df
        return out


# ---------------------------------------------------------------------
# Pipeline configuration
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PWRDConfig:
    """Column names, stratum enumeration and model specification for the pipeline.

    Notes
    -----
    - ``strata`` fixes the order of stratum dummy columns in BOTH the weight
      computation and the contrast vector; positions never depend on the order
      labels happen to appear in the data.
    - Duplicated strata are accepted here on purpose: they produce duplicated
      dummy columns, which the least-squares fitter reports as rank deficient.
    - ``baseline_formula`` is the patsy right-hand side of the control-only
      baseline model whose fitted values act as the offset of the stratum
      model. The intercept-only default gives the control-group mean outcome;
      covariates plug in by editing this string.
    - ``covariate_formula`` is the patsy right-hand side of the covariate block
      of the full outcome model (intercept included unless removed with
      ``- 1``).
    - Clustering: ``weight_cluster_col`` (blocks) for the stratum covariance,
      ``test_cluster_col`` (schools) for the final contrast test.

    """

    strata: tuple[str, ...]
    stratum_col: str = "cohort_yr"
    outcome_col: str = "Y"
    treatment_col: str = "treatment"
    eligible_col: str = "Eligible"
    weight_cluster_col: str = "blocks"
    test_cluster_col: str = "Sch"
    baseline_formula: str = "1"
    covariate_formula: str = "Race_White + Gend_Fem + Free_Lunch"
    rank_policy: str = "r"
    alternative: str = "greater"

    def __post_init__(self) -> None:
        strata = tuple(stratum_label(s) for s in self.strata)
        if not strata:
            raise ValueError("strata must list at least one stratum.")
        object.__setattr__(self, "strata", strata)
        if self.rank_policy.lower() not in _RANK_POLICIES:
            raise ValueError(f"rank_policy must be one of {_RANK_POLICIES}.")
        object.__setattr__(self, "rank_policy", self.rank_policy.lower())
        if self.alternative not in ALTERNATIVES:
            raise ValueError(f"alternative must be one of {ALTERNATIVES}.")

    @property
    def n_strata(self) -> int:
        return len(self.strata)

    @classmethod
    def from_data(
        cls, data: pd.DataFrame, *, stratum_col: str = "cohort_yr", **kwargs: Any,
    ) -> PWRDConfig:
        """Build a config whose strata are the sorted distinct labels of ``data``.

        Intended for exploratory use; analyses validated against reference
        output should pass ``strata`` explicitly.
        """
        if stratum_col not in data.columns:
            raise KeyError(f"Column {stratum_col!r} not found in data.")
        labels = pd.Series(data[stratum_col]).dropna().map(stratum_label).unique()
        return cls(strata=tuple(sorted(labels)), stratum_col=stratum_col, **kwargs)

    def required_columns(self, *, stage: str) -> list[str]:
        """Columns a stage reads directly (formula variables are checked by patsy)."""
        base = [self.stratum_col, self.outcome_col]
        if stage == "weights":
            return [*base, self.eligible_col, self.weight_cluster_col]
        if stage == "test":
            return [*base, self.treatment_col, self.test_cluster_col]
        raise ValueError("stage must be 'weights' or 'test'.")


# ---------------------------------------------------------------------
# Estimator base class
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Abstract estimator holding the most recent :class:`EstimationResult`."""

    def __init__(self) -> None:
        self._results: EstimationResult | None = None
        self._var_names: list[str] = []

    @abstractmethod
    def fit(self, *args: Any, **kwargs: Any) -> EstimationResult:
        """Estimate the model and return an :class:`EstimationResult`."""

    @property
    def results(self) -> EstimationResult:
        if self._results is None:
            raise RuntimeError("Model has not been fit yet; call .fit() first.")
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def se(self) -> pd.Series | None:
        return self.results.se

    @property
    def n_obs(self) -> int | None:
        return self.results.n_obs

    @staticmethod
    def _default_names(n: int, names: Sequence[str] | None) -> list[str]:
        if names is None:
            return [f"x{i}" for i in range(n)]
        out = [str(nm) for nm in names]
        if len(out) != n:
            raise ValueError(f"var_names has {len(out)} entries; expected {n}.")
        return out
