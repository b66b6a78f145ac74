"""Weighted contrast test on the full treatment-by-stratum outcome model.

The full model is ``Y ~ covariates + stratum + treatment:stratum`` fitted by
OLS with CR2 covariance clustered at the test level (schools by default). The
stratum weights are placed at the interaction coefficients to form a single
contrast ``K``, and ``H0: K beta = 0`` is tested against a one-sided
alternative with the Satterthwaite degrees of freedom of that contrast.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pandas as pd

from pwrd.core.inference import contrast_t_test
from pwrd.utils.design import CoefficientLayout, build_full_design, validate_columns

from .ols import OLS

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from .base import EstimationResult, PWRDConfig

__all__ = ["ContrastTest", "ContrastTestResult", "run_contrast_test"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContrastTestResult:
    """Outcome of the weighted contrast test.

    Unpacks as ``(t_stat, p_value)``.
    """

    t_stat: float
    p_value: float
    estimate: float
    se: float
    df: float
    alternative: str
    contrast: pd.Series
    fit: EstimationResult
    layout: CoefficientLayout

    def __iter__(self) -> Iterator[float]:
        yield self.t_stat
        yield self.p_value


class ContrastTest:
    """Fit the full outcome model and test the weighted interaction contrast.

    Parameters
    ----------
    config : PWRDConfig
        Column names, stratum order, covariate formula and alternative.
    cluster_col : str, optional
        Clustering column for the CR2 covariance. Defaults to
        ``config.test_cluster_col``.

    """

    def __init__(self, config: PWRDConfig, *, cluster_col: str | None = None) -> None:
        self.config = config
        self.cluster_col = cluster_col if cluster_col is not None else config.test_cluster_col
        self._result: ContrastTestResult | None = None

    @property
    def result(self) -> ContrastTestResult:
        if self._result is None:
            raise RuntimeError("Test has not been run yet; call .fit() first.")
        return self._result

    def fit(
        self,
        data: pd.DataFrame,
        weights: pd.Series | Sequence[float],
        coefficient_layout: CoefficientLayout | None = None,
    ) -> ContrastTestResult:
        cfg = self.config
        validate_columns(data, [self.cluster_col])
        y, X, layout = build_full_design(data, cfg)
        if coefficient_layout is not None:
            _check_layout(coefficient_layout, layout)

        fit = OLS(y, X, var_names=list(layout.names)).fit(
            cluster_ids=data[self.cluster_col].to_numpy(),
            rank_policy=cfg.rank_policy,
        )
        K = layout.contrast_vector(weights)
        test = contrast_t_test(
            fit.params.to_numpy(),
            fit.extra["cr2"],
            K.to_numpy(),
            alternative=cfg.alternative,
        )
        LOGGER.info(
            "Weighted contrast: estimate=%.6g se=%.6g t=%.4f df=%.2f p=%.4g (%d %r clusters)",
            test.estimate,
            test.se,
            test.t_stat,
            test.df,
            test.p_value,
            fit.model_info["n_clusters"],
            self.cluster_col,
        )
        self._result = ContrastTestResult(
            t_stat=test.t_stat,
            p_value=test.p_value,
            estimate=test.estimate,
            se=test.se,
            df=test.df,
            alternative=test.alternative,
            contrast=K,
            fit=fit,
            layout=layout,
        )
        return self._result


def _check_layout(expected: CoefficientLayout, built: CoefficientLayout) -> None:
    """Raise if a caller-supplied layout disagrees with the design actually built."""
    if expected.names == built.names and expected.strata == built.strata:
        return
    extra = [nm for nm in expected.names if nm not in built.names]
    missing = [nm for nm in built.names if nm not in expected.names]
    raise ValueError(
        "Coefficient layout does not match the fitted design "
        f"(unexpected: {extra}, absent: {missing}, "
        f"expected order: {list(expected.names)}, built order: {list(built.names)}).",
    )


def run_contrast_test(
    full_rows: pd.DataFrame,
    weights: pd.Series | Sequence[float],
    coefficient_layout: CoefficientLayout | None = None,
    cluster_column: str | None = None,
    *,
    config: PWRDConfig,
) -> ContrastTestResult:
    """Test the PWRD-weighted average treatment effect on ``full_rows``.

    ``coefficient_layout``, when given, must match the design built from
    ``config`` name for name; this guards comparisons against reference output.
    """
    return ContrastTest(config, cluster_col=cluster_column).fit(
        full_rows, weights, coefficient_layout,
    )

