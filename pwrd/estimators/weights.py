"""Precision-weighted stratum aggregation weights (PWRD).

The weights combine per-stratum baseline eligibility rates ``p0`` with the
CR2 covariance ``Sigma`` of stratum-level outcome shifts in the control group:

    w_raw = Sigma^{-1} p0,   w = max(w_raw, 0) / sum(max(w_raw, 0)).

Strata with a negative raw weight are excluded from the aggregate rather than
allowed to subtract from it, so the result is always a convex combination.
All estimation uses control-group rows only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from pwrd.core import linalg as la
from pwrd.exceptions import (
    DegenerateWeightsError,
    InvalidDataError,
    RankDeficiencyError,
    SingularCovarianceError,
)
from pwrd.utils.design import check_strata, stratum_dummies, stratum_label, validate_columns

from .ols import OLS

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from .base import EstimationResult, PWRDConfig

__all__ = [
    "PWRDWeights",
    "WeightResult",
    "baseline_eligibility",
    "compute_weights",
    "pwrd_weights_from_moments",
]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightResult:
    """Normalized weights plus every intermediate quantity that produced them."""

    weights: pd.Series
    raw_weights: pd.Series
    p0: pd.Series
    sigma: pd.DataFrame
    clamped: tuple[str, ...]
    stratum_fit: EstimationResult | None = None
    baseline_fit: EstimationResult | None = None

    @property
    def n_active(self) -> int:
        """Number of strata with strictly positive weight."""
        return int(np.sum(self.weights.to_numpy() > 0.0))


def baseline_eligibility(control: pd.DataFrame, config: PWRDConfig) -> pd.Series:
    """Mean of the eligibility indicator within each stratum, missing values ignored.

    Returns a Series indexed by ``config.strata`` in configured order.
    """
    validate_columns(control, [config.stratum_col, config.eligible_col])
    labels = check_strata(control[config.stratum_col], config.strata)
    try:
        elig = pd.to_numeric(control[config.eligible_col]).to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidDataError(
            f"Column {config.eligible_col!r} must be numeric 0/1: {exc}",
        ) from exc
    observed = elig[~np.isnan(elig)]
    if not np.all(np.isin(observed, (0.0, 1.0))):
        raise InvalidDataError(f"Column {config.eligible_col!r} must be binary 0/1.")
    means = pd.Series(elig).groupby(labels).mean()
    p0 = means.reindex(list(config.strata))
    empty = [s for s, v in p0.items() if not np.isfinite(v)]
    if empty:
        raise InvalidDataError(
            f"No non-missing {config.eligible_col!r} values for stratum/strata {empty}.",
        )
    p0.index.name = config.stratum_col
    p0.name = "p0"
    return p0.astype(np.float64)


def pwrd_weights_from_moments(
    p0: pd.Series | Sequence[float],
    sigma: pd.DataFrame | NDArray[np.float64],
    *,
    rank_policy: str = "r",
) -> WeightResult:
    """Turn baseline rates and their covariance into normalized non-negative weights.

    Parameters
    ----------
    p0 : Series or sequence, length S
        Baseline eligibility rate per stratum. Labels are taken from the
        Series index when available.
    sigma : DataFrame or ndarray, shape (S, S)
        Covariance of the stratum estimates.
    rank_policy : {"r", "stata"}
        QR tolerance convention for the invertibility check.

    Raises
    ------
    SingularCovarianceError
        If ``sigma`` is numerically singular.
    DegenerateWeightsError
        If no raw weight is strictly positive.

    """
    p = np.asarray(p0, dtype=np.float64).reshape(-1)
    S = la.to_dense(sigma)
    if S.shape != (p.shape[0], p.shape[0]):
        raise ValueError(
            f"sigma has shape {S.shape}; expected ({p.shape[0]}, {p.shape[0]}).",
        )
    if not (np.all(np.isfinite(p)) and np.all(np.isfinite(S))):
        raise ValueError("p0 and sigma must be finite.")
    if isinstance(p0, pd.Series):
        labels = [stratum_label(i) for i in p0.index]
    else:
        labels = [f"s{i}" for i in range(p.shape[0])]

    try:
        w_raw = la.solve(S, p, rank_policy=rank_policy).reshape(-1)
    except RankDeficiencyError as exc:
        raise SingularCovarianceError(
            f"Stratum covariance matrix is singular (rank {exc.rank} < {exc.n_columns}).",
        ) from exc

    w = np.maximum(w_raw, 0.0)
    total = float(np.sum(w))
    if not total > 0.0:
        raise DegenerateWeightsError(w_raw)
    w = w / total
    clamped = tuple(s for s, v in zip(labels, w_raw) if v < 0.0)
    if clamped:
        LOGGER.info("Clamped %d stratum weight(s) to zero: %s", len(clamped), list(clamped))

    return WeightResult(
        weights=pd.Series(w, index=labels, name="weight"),
        raw_weights=pd.Series(w_raw, index=labels, name="raw_weight"),
        p0=pd.Series(p, index=labels, name="p0"),
        sigma=pd.DataFrame(S, index=labels, columns=labels),
        clamped=clamped,
    )


class PWRDWeights:
    """Estimate PWRD aggregation weights from control-group observations.

    Steps
    -----
    1. ``p0``: mean eligibility per stratum (:func:`baseline_eligibility`).
    2. Baseline model ``Y ~ baseline_formula`` (intercept only by default);
       its fitted values become the offset of the stratum model.
    3. Stratum model ``Y ~ 0 + stratum dummies`` with that offset.
    4. ``Sigma``: CR2 covariance of step 3, clustered by
       ``config.weight_cluster_col``.
    5. Weights via :func:`pwrd_weights_from_moments`.

    Parameters
    ----------
    config : PWRDConfig
        Column names, stratum order and model specification.

    """

    def __init__(self, config: PWRDConfig) -> None:
        self.config = config
        self._result: WeightResult | None = None

    @property
    def result(self) -> WeightResult:
        if self._result is None:
            raise RuntimeError("Weights have not been computed yet; call .fit() first.")
        return self._result

    def fit(self, control: pd.DataFrame) -> WeightResult:
        cfg = self.config
        validate_columns(control, cfg.required_columns(stage="weights"))
        if cfg.treatment_col in control.columns:
            treat = pd.to_numeric(control[cfg.treatment_col], errors="coerce")
            if not bool((treat == 0).all()):
                raise InvalidDataError(
                    f"Weights must be computed from control rows only "
                    f"({cfg.treatment_col!r} == 0 for every row).",
                )

        p0 = baseline_eligibility(control, cfg)

        baseline = OLS.from_formula(
            f"Q({cfg.outcome_col!r}) ~ {cfg.baseline_formula}", control,
        ).fit(rank_policy=cfg.rank_policy)
        fits_cont = baseline.extra["yhat"]

        D, names = stratum_dummies(control[cfg.stratum_col], cfg.strata, prefix=cfg.stratum_col)
        stratum_fit = OLS(
            control[cfg.outcome_col].to_numpy(dtype=np.float64),
            D,
            offset=fits_cont,
            var_names=names,
        ).fit(
            cluster_ids=control[cfg.weight_cluster_col].to_numpy(),
            rank_policy=cfg.rank_policy,
        )

        res = pwrd_weights_from_moments(
            p0, stratum_fit.vcov.to_numpy(), rank_policy=cfg.rank_policy,
        )
        LOGGER.debug(
            "PWRD weights from %d control rows, %d %r clusters: %s",
            stratum_fit.n_obs,
            stratum_fit.model_info["n_clusters"],
            cfg.weight_cluster_col,
            np.round(res.weights.to_numpy(), 4).tolist(),
        )
        self._result = replace(res, stratum_fit=stratum_fit, baseline_fit=baseline)
        return self._result


def compute_weights(control_rows: pd.DataFrame, config: PWRDConfig) -> pd.Series:
    """Return the normalized PWRD weight per stratum, indexed in configured order."""
    return PWRDWeights(config).fit(control_rows).weights
