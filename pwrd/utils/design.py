"""Design-matrix construction for the stratum and full outcome models.

Stratum dummies are built explicitly from the configured stratum list so the
column order never depends on factor-level discovery. Formula-specified blocks
(the baseline model and the covariates of the full model) go through Patsy with
``NA_action="raise"``: rows are never dropped silently, because every design
must stay aligned with its cluster vector.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import patsy

from pwrd.exceptions import InvalidDataError, UnknownStratumError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from pwrd.estimators.base import PWRDConfig

__all__ = [
    "CoefficientLayout",
    "build_full_design",
    "check_strata",
    "formula_design",
    "stratum_label",
    "stratum_dummies",
    "validate_columns",
]


def validate_columns(data: pd.DataFrame, columns: Sequence[str]) -> None:
    """Raise :class:`InvalidDataError` naming every column missing from ``data``."""
    if not isinstance(data, pd.DataFrame):
        raise TypeError("data must be a pandas DataFrame")
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise InvalidDataError(f"Missing required column(s): {missing}.")


def stratum_label(value: Any) -> str:
    """Canonical string form of a stratum label.

    Integral floats print without the decimal part, so a column read back as
    ``1.0, 2.0`` matches strata configured as ``1, 2``.
    """
    if isinstance(value, (float, np.floating)) and np.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return str(value)


def check_strata(labels: Sequence[Any], strata: Sequence[str]) -> NDArray[np.str_]:
    """Return canonical labels after checking each belongs to ``strata``.

    Missing labels count as unknown: every observation must map to exactly one
    configured stratum.
    """
    ser = pd.Series(labels, copy=False)
    known = {stratum_label(s) for s in strata}
    as_str = np.asarray([stratum_label(v) for v in ser.to_numpy()], dtype=str)
    bad_mask = ser.isna().to_numpy() | ~np.isin(as_str, list(known))
    if np.any(bad_mask):
        unknown = pd.unique(ser[bad_mask]).tolist()
        raise UnknownStratumError(unknown, strata)
    return as_str


def stratum_dummies(
    labels: Sequence[Any], strata: Sequence[str], *, prefix: str = "cohort_yr",
) -> tuple[NDArray[np.float64], list[str]]:
    """One-hot code ``labels`` with one column per entry of ``strata``, in that order.

    No intercept is added: the strata are exhaustive and mutually exclusive.
    A stratum listed twice yields two identical columns, which the fitter
    rejects as rank deficient.
    """
    lab = check_strata(labels, strata)
    strata_arr = np.asarray([stratum_label(s) for s in strata])
    D = (lab[:, None] == strata_arr[None, :]).astype(np.float64)
    names = [f"{prefix}[{s}]" for s in strata_arr]
    return D, names


def formula_design(
    data: pd.DataFrame, formula: str,
) -> tuple[NDArray[np.float64], NDArray[np.float64], list[str]]:
    """Build ``(y, X, names)`` from a two-sided Patsy formula, refusing missing values."""
    na = patsy.NAAction(on_NA="raise", NA_types=["None", "NaN"])
    try:
        y_df, X_df = patsy.dmatrices(formula, data, NA_action=na, return_type="dataframe")
    except patsy.PatsyError as exc:
        raise InvalidDataError(f"Could not build design for {formula!r}: {exc}") from exc
    y = y_df.to_numpy(dtype=np.float64)
    if y.shape[1] != 1:
        raise InvalidDataError(f"Formula {formula!r} must have a single numeric outcome.")
    X = X_df.to_numpy(dtype=np.float64)
    if not (np.all(np.isfinite(y)) and np.all(np.isfinite(X))):
        raise InvalidDataError(f"Design for {formula!r} contains Inf values.")
    return y.reshape(-1), np.asarray(X, order="C"), list(X_df.design_info.column_names)


def _main_effect_name(stratum_col: str, stratum: str) -> str:
    return f"{stratum_col}[{stratum}]"


def _interaction_name(treatment_col: str, stratum_col: str, stratum: str) -> str:
    return f"{treatment_col}:{stratum_col}[{stratum}]"


@dataclass(frozen=True)
class CoefficientLayout:
    """Named coefficient layout of the full outcome model.

    Interaction coefficients are located by name, never by a fixed index
    range, so adding or removing covariates cannot misalign the contrast.
    """

    names: tuple[str, ...]
    strata: tuple[str, ...]
    stratum_col: str = "cohort_yr"
    treatment_col: str = "treatment"

    @classmethod
    def from_config(
        cls, config: PWRDConfig, covariate_names: Sequence[str],
    ) -> CoefficientLayout:
        """Layout of the full model given the column names of its covariate block."""
        strata = config.strata
        names = [str(nm) for nm in covariate_names]
        names += [_main_effect_name(config.stratum_col, s) for s in strata[1:]]
        names += [_interaction_name(config.treatment_col, config.stratum_col, s) for s in strata]
        return cls(
            names=tuple(names),
            strata=strata,
            stratum_col=config.stratum_col,
            treatment_col=config.treatment_col,
        )

    @property
    def n_params(self) -> int:
        return len(self.names)

    def main_effect_name(self, stratum: str) -> str:
        return _main_effect_name(self.stratum_col, stratum)

    def interaction_name(self, stratum: str) -> str:
        return _interaction_name(self.treatment_col, self.stratum_col, stratum)

    def interaction_positions(self) -> NDArray[np.intp]:
        """Positions of the treatment-by-stratum coefficients, in stratum order."""
        lookup = {nm: i for i, nm in enumerate(self.names)}
        wanted = [self.interaction_name(s) for s in self.strata]
        missing = [nm for nm in wanted if nm not in lookup]
        if missing:
            raise ValueError(
                f"Coefficient layout lacks interaction term(s) {missing}; "
                f"available: {list(self.names)}.",
            )
        return np.asarray([lookup[nm] for nm in wanted], dtype=np.intp)

    def contrast_vector(self, weights: pd.Series | Sequence[float]) -> pd.Series:
        """Pad stratum weights into a full-length contrast over ``names``.

        ``weights`` may be a Series indexed by stratum (matched by label) or a
        plain sequence already in configured stratum order. Every entry outside
        the interaction block is zero.
        """
        if isinstance(weights, pd.Series):
            idx = [stratum_label(i) for i in weights.index]
            if sorted(idx) != sorted(self.strata):
                raise ValueError(
                    f"Weight labels {idx} do not match layout strata {list(self.strata)}.",
                )
            w = pd.Series(weights.to_numpy(dtype=np.float64), index=idx)
            w = w.reindex(list(self.strata)).to_numpy()
        else:
            w = np.asarray(weights, dtype=np.float64).reshape(-1)
            if w.shape[0] != len(self.strata):
                raise ValueError(
                    f"Got {w.shape[0]} weights for {len(self.strata)} strata.",
                )
        if not np.all(np.isfinite(w)):
            raise ValueError("Weights contain NA/NaN/Inf.")
        K = np.zeros(self.n_params, dtype=np.float64)
        K[self.interaction_positions()] = w
        return pd.Series(K, index=list(self.names), name="contrast")


def build_full_design(
    data: pd.DataFrame, config: PWRDConfig,
) -> tuple[NDArray[np.float64], NDArray[np.float64], CoefficientLayout]:
    """Design of ``Y ~ covariates + stratum + treatment:stratum``.

    Column order follows R's ``lm`` for that formula: the Patsy covariate block
    (intercept first), stratum main effects for every stratum but the first
    (the reference level), then one treatment-by-stratum interaction per
    stratum in configured order.
    """
    validate_columns(data, config.required_columns(stage="test"))
    y, X_cov, cov_names = formula_design(
        data, f"Q({config.outcome_col!r}) ~ {config.covariate_formula}",
    )
    D, _ = stratum_dummies(data[config.stratum_col], config.strata, prefix=config.stratum_col)
    treat = pd.to_numeric(data[config.treatment_col], errors="coerce").to_numpy(dtype=np.float64)
    if not np.all(np.isin(treat, (0.0, 1.0))):
        raise InvalidDataError(
            f"Column {config.treatment_col!r} must be binary 0/1 without missing values.",
        )
    X = np.column_stack([X_cov, D[:, 1:], D * treat[:, None]])
    layout = CoefficientLayout.from_config(config, cov_names)
    return y, X, layout
