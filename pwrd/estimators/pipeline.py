"""End-to-end PWRD analysis: control-only weights, then the weighted contrast test."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pandas as pd

from pwrd.exceptions import InvalidDataError
from pwrd.utils.design import validate_columns

from .contrast import ContrastTest, ContrastTestResult
from .weights import PWRDWeights, WeightResult

if TYPE_CHECKING:
    from .base import PWRDConfig

__all__ = ["PWRDAnalysis", "pwrd_test"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PWRDAnalysis:
    weights: WeightResult
    test: ContrastTestResult

    @property
    def t_stat(self) -> float:
        return self.test.t_stat

    @property
    def p_value(self) -> float:
        return self.test.p_value

    def summary_frame(self) -> pd.DataFrame:
        """Per-stratum table: baseline rate, raw and final weight, and effect estimate."""
        fit = self.test.fit
        layout = self.test.layout
        effects = [layout.interaction_name(s) for s in layout.strata]
        out = pd.DataFrame(
            {
                "p0": self.weights.p0.to_numpy(),
                "raw_weight": self.weights.raw_weights.to_numpy(),
                "weight": self.weights.weights.to_numpy(),
                "effect": fit.params.loc[effects].to_numpy(),
            },
            index=pd.Index(layout.strata, name=layout.stratum_col),
        )
        if fit.se is not None:
            out["effect_se"] = fit.se.loc[effects].to_numpy()
        return out


def pwrd_test(data: pd.DataFrame, config: PWRDConfig) -> PWRDAnalysis:
    """Run the full analysis on ``data``.

    Weights are estimated from the control rows (``treatment == 0``) with
    clustering on ``config.weight_cluster_col``; the full outcome model is fit
    on every row with clustering on ``config.test_cluster_col``.
    """
    validate_columns(data, [config.treatment_col])
    treat = pd.to_numeric(data[config.treatment_col], errors="coerce")
    if treat.isna().any() or not treat.isin((0, 1)).all():
        raise InvalidDataError(
            f"Column {config.treatment_col!r} must be binary 0/1 without missing values.",
        )
    control = data.loc[(treat == 0).to_numpy()]
    if control.empty:
        raise InvalidDataError("No control rows to estimate weights from.")
    LOGGER.info(
        "PWRD analysis: %d rows (%d control), %d strata",
        len(data),
        len(control),
        config.n_strata,
    )
    weights = PWRDWeights(config).fit(control)
    test = ContrastTest(config).fit(data, weights.weights)
    return PWRDAnalysis(weights=weights, test=test)
