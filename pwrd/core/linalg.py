"""Linear algebra routines for the weighting and contrast-test pipeline.

This module provides the dense matrix layer every estimator goes through:
finiteness checks, pivoted QR with R/Stata rank conventions, full-rank least
squares, the QR route to ``(X'X)^{-1}``, symmetric matrix powers and cluster
bookkeeping. Rank deficiency is always reported, never papered over with a
pseudo-inverse.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import scipy.linalg as sla

from pwrd.exceptions import RankDeficiencyError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

# Matrix type alias
Matrix = Any

__all__ = [
    "dot",
    "eigh",
    "group_index",
    "group_sum",
    "qr",
    "qr_rank",
    "qr_solve",
    "rank_from_diag",
    "solve",
    "symmetric_power",
    "to_dense",
    "xtx_inv_via_qr",
]


def _assert_all_finite(*arrays: NDArray[np.float64] | None) -> None:
    """Raise ValueError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        ad = np.asarray(a)
        if not np.all(np.isfinite(ad)):
            raise ValueError(
                "Input contains NA/NaN/Inf; please drop/clean rows before fitting.",
            )


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object (ndarray, DataFrame, Series) to float64."""
    if isinstance(A, (pd.DataFrame, pd.Series)):
        return A.to_numpy(dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def qr(A: Matrix, *, pivoting: bool = False, mode: str = "economic"):
    """Compute the (optionally column-pivoted) QR decomposition using SciPy."""
    Ad = to_dense(A)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, R, P = sla.qr(Ad, mode=mode, pivoting=True)
        return Q[:, :rcols], R[:rcols, :], P
    Q, R = sla.qr(Ad, mode=mode, pivoting=False)
    return Q[:, :rcols], R[:rcols, :]


def rank_from_diag(diagR: NDArray[np.float64], ncols: int, *, mode: str = "r") -> int:
    """Determine numerical rank from R diagonal entries using method-specific tolerance."""
    d = np.asarray(diagR, dtype=float).reshape(-1)
    if d.size == 0:
        return 0
    mode_lower = str(mode).lower()
    if mode_lower == "stata":
        # Mata qrsolve: eta = 1e-13 * trace(|R|)/rows(R)
        tol = 1e-13 * (float(np.sum(np.abs(d))) / float(d.size))
    elif mode_lower in ("r", "r_strict"):
        # lm.fit default: tol = 1e-7 * max(|diag(R)|)
        tol = 1e-7 * float(np.max(np.abs(d)))
    else:  # numpy-like rcond style
        tol = np.finfo(float).eps * max(1, int(ncols)) * float(np.max(np.abs(d)))
    return int(np.sum(np.abs(d) > tol))


def qr_rank(A: Matrix, *, mode: str = "r") -> tuple[int, NDArray[np.intp]]:
    """Return the numerical rank of ``A`` and its column pivot order.

    The first ``rank`` entries of the pivot are the columns a pivoted QR keeps;
    the remainder are the ones it would drop as collinear.
    """
    Ad = to_dense(A)
    _assert_all_finite(Ad)
    if Ad.size == 0:
        return 0, np.arange(Ad.shape[1] if Ad.ndim == 2 else 0)
    _Q, R, P = qr(Ad, pivoting=True)
    r = rank_from_diag(np.abs(np.diag(R)), Ad.shape[1], mode=mode)
    return r, np.asarray(P, dtype=np.intp)


def qr_solve(
    A: Matrix, B: Matrix, *, mode: str = "r",
) -> NDArray[np.float64]:
    """Solve the least-squares problem ``min ||A X - B||`` via pivoted QR.

    ``A`` must have full column rank; otherwise :class:`RankDeficiencyError`
    is raised instead of returning a minimum-norm or zero-filled solution.
    """
    Ad = to_dense(A)
    Bd = to_dense(B)
    Bd = Bd.reshape(-1, 1) if Bd.ndim == 1 else Bd
    _assert_all_finite(Ad, Bd)
    if Ad.shape[0] != Bd.shape[0]:
        raise ValueError(
            f"qr_solve: A has {Ad.shape[0]} rows but B has {Bd.shape[0]}.",
        )
    p = Ad.shape[1]
    Q, R, P = qr(Ad, pivoting=True)
    r = rank_from_diag(np.abs(np.diag(R)), p, mode=mode)
    if r < p:
        raise RankDeficiencyError(r, p)
    out = np.empty((p, Bd.shape[1]), dtype=np.float64)
    out[P, :] = sla.solve_triangular(R[:p, :p], Q.T @ Bd, lower=False)
    return out


def solve(A: Matrix, B: Matrix, *, rank_policy: str = "r") -> NDArray[np.float64]:
    """Solve the square system ``A X = B`` after a strict rank check.

    Raises :class:`RankDeficiencyError` when ``A`` is numerically singular.
    """
    Ad = to_dense(A)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        raise ValueError(f"solve: A must be square; got shape {Ad.shape}.")
    return qr_solve(Ad, B, mode=rank_policy)


def dot(A: Matrix, B: Matrix) -> NDArray[np.float64]:
    """Dense matrix multiplication in float64."""
    return to_dense(A) @ to_dense(B)


def xtx_inv_via_qr(X: Matrix, *, rank_policy: str = "r") -> NDArray[np.float64]:
    """Compute ``(X'X)^{-1}`` from the pivoted QR factor of ``X``.

    This avoids forming the Gram matrix explicitly and so does not square the
    condition number. Only full column rank designs are accepted.
    """
    Xd = to_dense(X)
    _assert_all_finite(Xd)
    p = Xd.shape[1]
    _Q, R, P = qr(Xd, pivoting=True)
    r = rank_from_diag(np.abs(np.diag(R)), p, mode=rank_policy)
    if r < p:
        raise RankDeficiencyError(r, p)
    Rinv = sla.solve_triangular(R[:p, :p], np.eye(p, dtype=np.float64), lower=False)
    A = Rinv @ Rinv.T
    invp = np.argsort(P[:p])
    A = A[invp][:, invp]
    return (0.5 * (A + A.T)).astype(np.float64)


def eigh(A: Matrix) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Eigenvalues (ascending) and eigenvectors of the symmetrized matrix."""
    Ad = to_dense(A)
    Ad = 0.5 * (Ad + Ad.T)
    return np.linalg.eigh(Ad)


def symmetric_power(
    evals: NDArray[np.float64], evecs: NDArray[np.float64], power: float,
) -> NDArray[np.float64]:
    """Rebuild ``V diag(evals**power) V'`` from an eigendecomposition.

    Callers are responsible for checking that ``evals`` are positive when
    ``power`` is negative.
    """
    return (evecs * np.power(evals, power)) @ evecs.T


def group_index(codes: Sequence[Any]) -> tuple[NDArray[Any], NDArray[np.intp]]:
    """Map group labels to ``(sorted unique labels, integer code per row)``."""
    codes_arr = np.asarray(codes).reshape(-1)
    inv, uniq = pd.factorize(codes_arr, sort=True)
    if np.any(inv < 0):
        raise ValueError("Group codes contain missing values.")
    return np.asarray(uniq), inv.astype(np.intp)


def group_sum(X: Matrix, inverse: NDArray[np.intp], n_groups: int) -> NDArray[np.float64]:
    """Sum rows of X within groups given integer codes from :func:`group_index`.

    Returns a dense ``(n_groups x p)`` array ordered like the unique labels.
    """
    Xd = to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    inv = np.asarray(inverse).reshape(-1)
    if inv.shape[0] != Xd.shape[0]:
        raise ValueError("codes length must match number of rows in X")
    out = np.zeros((int(n_groups), Xd.shape[1]), dtype=np.float64)
    np.add.at(out, inv, Xd)
    return out
