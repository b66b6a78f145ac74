"""Ordinary Least Squares (OLS) estimator with an additive offset.

This module implements ``y = X beta + offset + u`` by pivoted-QR least squares
with a strict full-rank requirement, and CR2 cluster-robust inference with
Satterthwaite degrees of freedom.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from pwrd.core import linalg as la
from pwrd.core.sandwich import cr2_vcov
from pwrd.exceptions import InvalidDataError, RankDeficiencyError
from pwrd.utils.design import formula_design

from .base import BaseEstimator, EstimationResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


ArrayLike = Union[pd.Series, np.ndarray[Any, np.dtype[np.float64]]]
MatrixLike = Union[pd.DataFrame, np.ndarray[Any, np.dtype[np.float64]]]

LOGGER = logging.getLogger(__name__)


class OLS(BaseEstimator):
    """Ordinary Least Squares regression with an optional fixed offset.

    Estimates ``y = X beta + offset + u``. The offset is subtracted from ``y``
    before solving, so it acts as a known additive adjustment (for example the
    fitted values of a baseline model).

    Parameters
    ----------
    y : array-like, shape (n,) or (n, 1)
        Dependent variable (outcome).
    X : array-like, shape (n, p)
        Design matrix. No constant is added; include one explicitly if needed.
    offset : array-like, shape (n,), optional
        Additive adjustment. Defaults to zero.
    var_names : Sequence[str], optional
        Column names for X. If None and X is a DataFrame, uses X.columns,
        otherwise ``['x0', 'x1', ...]``.

    Examples
    --------
    >>> import numpy as np
    >>> from pwrd.estimators.ols import OLS
    >>> rng = np.random.default_rng(42)
    >>> X = np.column_stack([np.ones(60), rng.standard_normal(60)])
    >>> y = X @ np.array([1.0, 2.0]) + rng.standard_normal(60)
    >>> res = OLS(y, X, var_names=["const", "x"]).fit(cluster_ids=np.repeat(np.arange(12), 5))
    >>> res.summary_frame()  # doctest: +SKIP

    Notes
    -----
    - Coefficients come from a pivoted QR solve; the Gram matrix is never
      inverted explicitly.
    - A design that is not of full column rank raises
      :class:`~pwrd.exceptions.RankDeficiencyError` naming the collinear
      columns. No column is dropped and no pseudo-inverse is used.
    - Non-finite values in ``y``, ``X`` or ``offset`` raise
      :class:`~pwrd.exceptions.InvalidDataError`; rows are never dropped,
      so the design always stays aligned with cluster identifiers.

    """

    def __init__(
        self,
        y: ArrayLike,
        X: MatrixLike,
        *,
        offset: ArrayLike | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        if var_names is None and isinstance(X, pd.DataFrame):
            var_names = [str(c) for c in X.columns]
        X_arr = np.asarray(X, dtype=np.float64, order="C")
        if X_arr.ndim == 1:
            X_arr = X_arr.reshape(-1, 1)
        y_arr = np.asarray(y, dtype=np.float64).reshape(-1)
        if y_arr.shape[0] != X_arr.shape[0]:
            raise InvalidDataError(
                f"y has {y_arr.shape[0]} rows but X has {X_arr.shape[0]}.",
            )
        if offset is None:
            off = np.zeros_like(y_arr)
        else:
            off = np.asarray(offset, dtype=np.float64).reshape(-1)
            if off.shape[0] != y_arr.shape[0]:
                raise InvalidDataError(
                    f"offset has {off.shape[0]} rows; expected {y_arr.shape[0]}.",
                )

        self.y_orig: NDArray[np.float64] = y_arr
        self.X_orig: NDArray[np.float64] = X_arr
        self.offset: NDArray[np.float64] = off
        self._n_obs, self._n_features = X_arr.shape
        self._var_names = self._default_names(self._n_features, var_names)

    @classmethod
    def from_formula(
        cls,
        formula: str,
        data: pd.DataFrame,
        *,
        offset: ArrayLike | None = None,
    ) -> OLS:
        """Build an OLS model from a two-sided Patsy formula (e.g. ``"Y ~ 1"``).

        Missing values in formula variables raise instead of being dropped.
        """
        y, X, names = formula_design(data, formula)
        return cls(y, X, offset=offset, var_names=names)

    # ------------------------------------------------------------------
    def fit(
        self,
        *,
        cluster_ids: Sequence[Any] | None = None,
        rank_policy: str = "r",
    ) -> EstimationResult:
        """Fit the model.

        Parameters
        ----------
        cluster_ids : sequence, length n, optional
            When given, CR2 covariance, standard errors and per-coefficient
            Satterthwaite degrees of freedom are computed with these clusters.
        rank_policy : {"r", "stata"}, default "r"
            QR tolerance convention for the full-rank check.

        """
        rp = str(rank_policy).lower()
        if rp not in {"r", "stata"}:
            raise ValueError("rank_policy must be one of {'r','stata'}.")

        X = self.X_orig
        bad = ~(
            np.isfinite(self.y_orig)
            & np.isfinite(self.offset)
            & np.all(np.isfinite(X), axis=1)
        )
        if np.any(bad):
            raise InvalidDataError(
                f"{int(np.sum(bad))} row(s) contain NA/NaN/Inf in y, X or offset.",
            )
        if self._n_obs < self._n_features:
            raise RankDeficiencyError(self._n_obs, self._n_features)

        rank, piv = la.qr_rank(X, mode=rp)
        if rank < self._n_features:
            dropped = [self._var_names[j] for j in piv[rank:]]
            raise RankDeficiencyError(rank, self._n_features, dropped)

        z = self.y_orig - self.offset
        beta_hat = la.qr_solve(X, z, mode=rp).reshape(-1)
        yhat = la.dot(X, beta_hat) + self.offset
        resid = self.y_orig - yhat

        vcov_df = None
        se = None
        cr2 = None
        df_coef = None
        clusters = None
        if cluster_ids is not None:
            clusters = np.asarray(cluster_ids).reshape(-1)
            cr2 = cr2_vcov(X, resid, clusters, rank_policy=rp)
            vcov_df = pd.DataFrame(cr2.vcov, index=self._var_names, columns=self._var_names)
            se = pd.Series(
                np.sqrt(np.maximum(np.diag(cr2.vcov), 0.0)),
                index=self._var_names,
                name="se",
            )
            df_coef = pd.Series(cr2.coefficient_df(), index=self._var_names, name="df")
            LOGGER.debug(
                "OLS fit: n=%d p=%d clusters=%d", self._n_obs, self._n_features, cr2.n_clusters,
            )
        else:
            LOGGER.debug("OLS fit: n=%d p=%d (no clustering)", self._n_obs, self._n_features)

        extra = {
            "X_inference": X,
            "y_inference": self.y_orig,
            "offset": self.offset,
            "yhat": yhat,
            "u_inference": resid,
            "clusters_inference": clusters,
            "cr2": cr2,
            "df_satterthwaite": df_coef,
            "rank_policy_used": rp,
            "design_info": {
                "var_names_final": list(self._var_names),
                "n_features_final": int(self._n_features),
                "has_offset": bool(np.any(self.offset != 0.0)),
            },
        }
        self._results = EstimationResult(
            params=pd.Series(beta_hat, index=self._var_names),
            se=se,
            vcov=vcov_df,
            n_obs=int(self._n_obs),
            model_info={
                "Estimator": "OLS",
                "vcov": "CR2" if cr2 is not None else "none",
                "n_clusters": cr2.n_clusters if cr2 is not None else None,
                "n_params": int(self._n_features),
            },
            extra=extra,
        )
        return self._results
