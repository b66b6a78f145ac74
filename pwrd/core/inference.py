"""Inference utilities for weighted contrasts of OLS coefficients.

This module provides the robust t-test of a single linear combination
``K beta`` using a CR2 covariance and the Satterthwaite degrees of freedom
that belong to that specific combination.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy import stats

from pwrd.exceptions import NonPositiveContrastVarianceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from pwrd.core.sandwich import CR2Result

__all__ = ["ALTERNATIVES", "LinearContrastTest", "contrast_t_test", "t_pvalue"]

LOGGER = logging.getLogger(__name__)

ALTERNATIVES = ("greater", "less", "two-sided")


@dataclass(frozen=True)
class LinearContrastTest:
    estimate: float
    se: float
    t_stat: float
    df: float
    p_value: float
    alternative: str


def t_pvalue(t_stat: float, df: float, *, alternative: str = "greater") -> float:
    """P-value of ``t_stat`` under a t reference distribution with ``df`` degrees of freedom.

    ``"greater"`` gives ``P(T_df > t)``, ``"less"`` gives ``P(T_df < t)`` and
    ``"two-sided"`` gives ``P(|T_df| > |t|)``. The result is clipped to [0, 1].
    """
    if alternative not in ALTERNATIVES:
        raise ValueError(f"alternative must be one of {ALTERNATIVES}; got {alternative!r}.")
    if not (np.isfinite(df) and df > 0.0):
        raise ValueError(f"Degrees of freedom must be positive and finite; got {df}.")
    if alternative == "greater":
        p = stats.t.sf(t_stat, df)
    elif alternative == "less":
        p = stats.t.cdf(t_stat, df)
    else:
        p = 2.0 * stats.t.sf(abs(t_stat), df)
    return float(np.clip(p, 0.0, 1.0))


def contrast_t_test(
    beta: Sequence[float] | NDArray[np.float64],
    cr2: CR2Result,
    contrast: Sequence[float] | NDArray[np.float64],
    *,
    alternative: str = "greater",
) -> LinearContrastTest:
    """Test ``H0: K beta = 0`` with a CR2 standard error and Satterthwaite df.

    Raises
    ------
    NonPositiveContrastVarianceError
        If ``K V K'`` is zero, negative or not finite.

    """
    b = np.asarray(beta, dtype=np.float64).reshape(-1)
    K = np.asarray(contrast, dtype=np.float64).reshape(-1)
    if b.shape != K.shape:
        raise ValueError(
            f"Contrast has length {K.shape[0]} but the coefficient vector has {b.shape[0]}.",
        )
    variance = cr2.contrast_variance(K)
    if not (np.isfinite(variance) and variance > 0.0):
        raise NonPositiveContrastVarianceError(variance)
    estimate = float(K @ b)
    se = float(np.sqrt(variance))
    t_stat = estimate / se
    df = cr2.contrast_df(K)
    p_value = t_pvalue(t_stat, df, alternative=alternative)
    LOGGER.debug(
        "Contrast test: estimate=%.6g se=%.6g t=%.4f df=%.2f p=%.4g (%s)",
        estimate, se, t_stat, df, p_value, alternative,
    )
    return LinearContrastTest(
        estimate=estimate,
        se=se,
        t_stat=t_stat,
        df=df,
        p_value=p_value,
        alternative=alternative,
    )
