"""Bias-reduced cluster-robust (CR2) covariance estimation.

Implements the Bell-McCaffrey bias-reduced linearization for OLS with an
identity working model:

    V = M (sum_j X_j' A_j e_j e_j' A_j X_j) M,    M = (X'X)^{-1},
    A_j = (I - X_j M X_j')^{-1/2},

together with the Satterthwaite degrees of freedom of Pustejovsky & Tipton
(2018) for a single linear combination ``c'beta``:

    df = (sum_j p_j'p_j)^2 / sum_i sum_j (p_i'p_j)^2,
    p_j = (I - H)[:, j] A_j X_j M c.

The Gram matrix ``G = [p_i'p_j]`` is evaluated without forming the ``N x N``
hat matrix: ``G = diag(u_j'u_j) - a' M a`` with ``u_j = A_j X_j M c`` and
``a_j = X_j' u_j``.

References
----------
.. [1] Bell, R. M., & McCaffrey, D. F. (2002). "Bias reduction in standard
       errors for linear regression with multi-stage samples." Survey
       Methodology, 28(2), 169-181.
.. [2] Pustejovsky, J. E., & Tipton, E. (2018). "Small-sample methods for
       cluster-robust variance estimation and hypothesis testing in fixed
       effects models." Journal of Business & Economic Statistics, 36(4),
       672-683.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from pwrd.core import linalg as la
from pwrd.exceptions import InvalidDataError, SingularClusterAdjustmentError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = ["CR2Result", "cr2_vcov"]

LOGGER = logging.getLogger(__name__)

# Eigenvalues of I - H_jj lie in [0, 1]; anything at or below this is a unit leverage.
_EIG_TOL = 1e-12


@dataclass(frozen=True)
class CR2Result:
    """CR2 covariance of an OLS fit plus the artifacts needed for df calculations.

    Cluster adjustments are stored in projected form: ``bases[j]`` is the
    orthonormal basis ``Q_j`` of the rows of cluster ``j`` and
    ``adjustments[j]`` is the small matrix ``B_j^{-1/2} - I`` acting on it.
    """

    vcov: NDArray[np.float64]
    bread: NDArray[np.float64]
    design: NDArray[np.float64]
    bases: tuple[NDArray[np.float64], ...]
    adjustments: tuple[NDArray[np.float64], ...]
    rows: tuple[NDArray[np.intp], ...]
    inverse: NDArray[np.intp]
    labels: NDArray[Any]

    @property
    def n_clusters(self) -> int:
        return len(self.rows)

    def adjust(self, cluster: int, v: NDArray[np.float64]) -> NDArray[np.float64]:
        """Apply ``A_j = (I - H_jj)^{-1/2}`` of cluster position ``cluster`` to ``v``."""
        return _apply_adjustment(self.bases[cluster], self.adjustments[cluster], v)

    def contrast_variance(self, contrast: Sequence[float]) -> float:
        """Return ``c' V c`` for a length-p contrast."""
        c = self._as_contrast(contrast)
        return float(c @ self.vcov @ c)

    def contrast_df(self, contrast: Sequence[float]) -> float:
        """Satterthwaite degrees of freedom for the linear combination ``c'beta``.

        Returns NaN when the contrast has zero estimated variance under the
        working model (the Gram matrix is identically zero).
        """
        c = self._as_contrast(contrast)
        X = self.design
        Mc = self.bread @ c
        u = np.empty(X.shape[0], dtype=np.float64)
        for g, idx in enumerate(self.rows):
            u[idx] = self.adjust(g, X[idx] @ Mc)
        uu = la.group_sum((u * u).reshape(-1, 1), self.inverse, self.n_clusters).reshape(-1)
        a = la.group_sum(X * u[:, None], self.inverse, self.n_clusters)
        G = np.diag(uu) - a @ self.bread @ a.T
        denom = float(np.sum(G * G))
        if denom <= 0.0:
            return float("nan")
        return float(np.trace(G) ** 2 / denom)

    def coefficient_df(self) -> NDArray[np.float64]:
        """Satterthwaite degrees of freedom for each coefficient separately."""
        p = self.bread.shape[0]
        eye = np.eye(p, dtype=np.float64)
        return np.array([self.contrast_df(eye[k]) for k in range(p)], dtype=np.float64)

    def _as_contrast(self, contrast: Sequence[float]) -> NDArray[np.float64]:
        c = np.asarray(contrast, dtype=np.float64).reshape(-1)
        if c.shape[0] != self.bread.shape[0]:
            raise ValueError(
                f"Contrast has length {c.shape[0]}; expected {self.bread.shape[0]}.",
            )
        if not np.all(np.isfinite(c)):
            raise ValueError("Contrast contains NA/NaN/Inf.")
        return c


def _apply_adjustment(
    Q: NDArray[np.float64], D: NDArray[np.float64], v: NDArray[np.float64],
) -> NDArray[np.float64]:
    # (I - H_jj)^{-1/2} v = v + Q (B^{-1/2} - I) Q'v
    return v + Q @ (D @ (Q.T @ v))


def _cluster_rows(
    inverse: NDArray[np.intp], n_groups: int,
) -> tuple[NDArray[np.intp], ...]:
    """Split row positions by integer cluster code, preserving row order inside each cluster."""
    order = np.argsort(inverse, kind="stable")
    counts = np.bincount(inverse, minlength=n_groups)
    return tuple(np.split(order, np.cumsum(counts)[:-1]))


def cr2_vcov(
    X: NDArray[np.float64],
    resid: NDArray[np.float64],
    cluster_ids: Sequence[Any],
    *,
    rank_policy: str = "r",
) -> CR2Result:
    """Compute the CR2 cluster-robust covariance of OLS coefficients.

    Parameters
    ----------
    X : ndarray, shape (n, p)
        Full-column-rank design matrix of the fit.
    resid : ndarray, shape (n,) or (n, 1)
        OLS residuals ``y - X beta - offset``.
    cluster_ids : sequence, length n
        Cluster label of every row (any hashable, non-missing values).
    rank_policy : str, default "r"
        QR rank convention used when forming ``(X'X)^{-1}``.

    Returns
    -------
    CR2Result
        Symmetric PSD covariance plus bread, adjustments and cluster rows.

    Raises
    ------
    RankDeficiencyError
        If ``X`` is not of full column rank.
    SingularClusterAdjustmentError
        If ``I - X_j M X_j'`` is singular for some cluster ``j``. The estimator
        does not substitute a generalized inverse for that cluster.

    Notes
    -----
    ``I - H_jj`` is never formed. With the thin QR ``X_j = Q_j R_j`` it equals
    ``(I - Q_j Q_j') + Q_j B_j Q_j'`` where ``B_j = I - R_j M R_j'`` has at most
    ``p`` rows, so its eigenvalues below one are those of ``B_j`` and the
    inverse square root only needs ``B_j^{-1/2}``. Work per cluster is
    ``O(n_j p^2)`` and storage ``O(n_j p)``.

    """
    Xd = la.to_dense(X)
    e = la.to_dense(resid).reshape(-1)
    if Xd.ndim != 2 or Xd.shape[0] != e.shape[0]:
        raise InvalidDataError(
            f"Design has shape {Xd.shape} but residuals have length {e.shape[0]}.",
        )
    ids = np.asarray(cluster_ids).reshape(-1)
    if ids.shape[0] != Xd.shape[0]:
        raise InvalidDataError(
            f"cluster_ids length {ids.shape[0]} != n_obs {Xd.shape[0]}.",
        )
    try:
        la._assert_all_finite(Xd, e)
        labels, inverse = la.group_index(ids)
    except ValueError as exc:
        raise InvalidDataError(str(exc)) from exc

    M = la.xtx_inv_via_qr(Xd, rank_policy=rank_policy)
    rows = _cluster_rows(inverse, labels.shape[0])

    bases: list[NDArray[np.float64]] = []
    adjustments: list[NDArray[np.float64]] = []
    scores = np.empty((len(rows), Xd.shape[1]), dtype=np.float64)
    for g, idx in enumerate(rows):
        Xj = Xd[idx]
        Qj, Rj = la.qr(Xj)
        B = np.eye(Rj.shape[0], dtype=np.float64) - Rj @ M @ Rj.T
        evals, evecs = la.eigh(B)
        if evals[0] <= _EIG_TOL:
            raise SingularClusterAdjustmentError(labels[g], evals[0])
        D = la.symmetric_power(evals, evecs, -0.5) - np.eye(Rj.shape[0], dtype=np.float64)
        bases.append(Qj)
        adjustments.append(D)
        scores[g] = Xj.T @ _apply_adjustment(Qj, D, e[idx])

    V = M @ (scores.T @ scores) @ M
    V = 0.5 * (V + V.T)
    LOGGER.debug("CR2 vcov computed over %d clusters (p=%d).", len(rows), Xd.shape[1])
    return CR2Result(
        vcov=V,
        bread=M,
        design=Xd,
        bases=tuple(bases),
        adjustments=tuple(adjustments),
        rows=rows,
        inverse=inverse,
        labels=labels,
    )
