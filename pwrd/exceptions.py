"""Exception hierarchy for the pwrd package.

Every failure of the weighting/test pipeline is deterministic: none of these
errors is retried or replaced by a default value. Each class also derives from
the builtin exception that best describes it, so callers catching
``ValueError`` or ``numpy.linalg.LinAlgError`` keep working.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "DegenerateWeightsError",
    "InvalidDataError",
    "NonPositiveContrastVarianceError",
    "PWRDError",
    "RankDeficiencyError",
    "SingularClusterAdjustmentError",
    "SingularCovarianceError",
    "UnknownStratumError",
]


class PWRDError(Exception):
    """
    Base exception class for all pwrd errors.

    Catch this to handle any failure raised by the package::

        try:
            analysis = pwrd_test(data, config)
        except PWRDError as exc:
            ...
    """


class InvalidDataError(PWRDError, ValueError):
    """
    Raised when the input table cannot be used as handed over.

    Triggers include missing required columns, non-finite outcome or design
    entries in rows used for a fit, treated rows passed to the control-only
    weight computation, and strata whose ``Eligible`` values are all missing.
    """


class UnknownStratumError(PWRDError, ValueError):
    """Raised when a stratum label is not part of the configured enumeration."""

    def __init__(self, labels: Sequence[Any], strata: Sequence[Any]) -> None:
        self.labels = list(labels)
        self.strata = list(strata)
        shown = ", ".join(repr(x) for x in self.labels[:5])
        more = "" if len(self.labels) <= 5 else f" (+{len(self.labels) - 5} more)"
        super().__init__(
            f"Stratum label(s) {shown}{more} not in the configured strata {self.strata!r} "
            "(labels are matched on their string form).",
        )


class RankDeficiencyError(PWRDError, np.linalg.LinAlgError):
    """
    Raised when a design matrix is not of full column rank.

    The least-squares solution is then not unique. The fitter never falls back
    to a pseudo-inverse; ``dropped`` lists the columns a pivoted QR would have
    discarded so the offending terms can be identified.
    """

    def __init__(self, rank: int, n_columns: int, dropped: Sequence[str] = ()) -> None:
        self.rank = int(rank)
        self.n_columns = int(n_columns)
        self.dropped = list(dropped)
        detail = f"; collinear column(s): {self.dropped}" if self.dropped else ""
        super().__init__(
            f"Design matrix has rank {self.rank} < {self.n_columns} columns{detail}.",
        )


class SingularClusterAdjustmentError(PWRDError, np.linalg.LinAlgError):
    """
    Raised when ``I - H_jj`` of a cluster cannot be inverted during CR2.

    This happens when some direction of the design is supported entirely by
    the rows of a single cluster (for example a cluster holding the only
    observation of a dummy column), so the cluster's leverage is one.
    """

    def __init__(self, cluster: Any, min_eigenvalue: float) -> None:
        self.cluster = cluster
        self.min_eigenvalue = float(min_eigenvalue)
        super().__init__(
            f"CR2 adjustment for cluster {cluster!r} is singular "
            f"(smallest eigenvalue of I - H_jj = {self.min_eigenvalue:.3g}).",
        )


class SingularCovarianceError(PWRDError, np.linalg.LinAlgError):
    """Raised when the stratum covariance matrix cannot be inverted."""


class DegenerateWeightsError(PWRDError, ValueError):
    """Raised when every raw weight is non-positive, so normalization is undefined."""

    def __init__(self, raw_weights: Sequence[float]) -> None:
        self.raw_weights = np.asarray(raw_weights, dtype=np.float64)
        super().__init__(
            "All raw stratum weights are <= 0 after clamping; "
            f"cannot normalize (raw weights: {self.raw_weights.tolist()}).",
        )


class NonPositiveContrastVarianceError(PWRDError, ValueError):
    """Raised when the estimated variance ``K V K'`` of the contrast is not positive."""

    def __init__(self, variance: float) -> None:
        self.variance = float(variance)
        super().__init__(
            f"Estimated contrast variance K V K' = {self.variance:.6g} is not positive.",
        )
