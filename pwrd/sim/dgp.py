"""Synthetic stepped-wedge school data for tests and demonstrations.

Schools are nested in blocks; within each block one school is treated and the
others serve as controls. Students enter in one of ``n_cohorts`` cohorts and
are followed until the last calendar period, so cohort ``c`` contributes the
follow-up years ``1 .. n_cohorts - c + 1``. Each (cohort, year) pair is one
stratum labelled ``"c{cohort}y{year}"``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

__all__ = ["simulate_stepped_wedge", "stepped_wedge_strata"]


def stepped_wedge_strata(n_cohorts: int = 3) -> tuple[str, ...]:
    """Stratum labels in cohort-major order, e.g. ``c1y1, c1y2, ..., c3y1``."""
    if n_cohorts < 1:
        raise ValueError("n_cohorts must be >= 1")
    return tuple(
        f"c{c}y{y}" for c in range(1, n_cohorts + 1) for y in range(1, n_cohorts - c + 2)
    )


def _effects_by_stratum(
    effects: float | Sequence[float] | Mapping[str, float], strata: tuple[str, ...],
) -> dict[str, float]:
    if isinstance(effects, (int, float)):
        return dict.fromkeys(strata, float(effects))
    if hasattr(effects, "keys"):
        missing = [s for s in strata if s not in effects]
        if missing:
            raise ValueError(f"effects lacks stratum/strata {missing}")
        return {s: float(effects[s]) for s in strata}
    vals = [float(v) for v in effects]
    if len(vals) != len(strata):
        raise ValueError(f"Got {len(vals)} effects for {len(strata)} strata.")
    return dict(zip(strata, vals))


def simulate_stepped_wedge(
    n_blocks: int = 10,
    schools_per_block: int = 2,
    students_per_cohort: int = 8,
    n_cohorts: int = 3,
    *,
    effects: float | Sequence[float] | Mapping[str, float] = 0.25,
    eligibility_hazard: float = 0.2,
    missing_eligible: float = 0.0,
    block_sd: float = 0.5,
    school_sd: float = 0.3,
    noise_sd: float = 1.0,
    seed: int | None = 0,
) -> pd.DataFrame:
    """Simulate one row per student-year.

    Parameters
    ----------
    n_blocks, schools_per_block : int
        Cluster structure. The first school of every block is treated.
    students_per_cohort : int
        Students entering each school per cohort.
    n_cohorts : int
        Number of entry cohorts (and calendar periods).
    effects : float, sequence or mapping
        Treatment effect per stratum; a scalar applies to every stratum.
    eligibility_hazard : float
        Per-year probability that a not-yet-eligible student becomes eligible.
        ``Eligible`` is absorbing within a student.
    missing_eligible : float
        Share of ``Eligible`` values set to NaN.

    Returns
    -------
    pandas.DataFrame
        Columns ``blocks, Sch, EID, cohort_yr, treatment, Grade, Yrs,
        Race_White, Gend_Fem, Free_Lunch, Y, Eligible``.

    """
    if n_blocks < 2:
        raise ValueError("n_blocks must be >= 2")
    if schools_per_block < 2:
        raise ValueError("schools_per_block must be >= 2 (one treated, at least one control)")
    if students_per_cohort < 1:
        raise ValueError("students_per_cohort must be >= 1")
    if not 0.0 <= eligibility_hazard <= 1.0:
        raise ValueError("eligibility_hazard must lie in [0, 1]")
    if not 0.0 <= missing_eligible < 1.0:
        raise ValueError("missing_eligible must lie in [0, 1)")

    rng = np.random.default_rng(seed)
    strata = stepped_wedge_strata(n_cohorts)
    tau = _effects_by_stratum(effects, strata)
    stratum_shift = dict(zip(strata, rng.normal(0.0, 0.3, len(strata))))

    rows: list[dict[str, object]] = []
    for b in range(n_blocks):
        block_eff = rng.normal(0.0, block_sd)
        for k in range(schools_per_block):
            sch = f"S{b:02d}{k}"
            treated = int(k == 0)
            school_eff = rng.normal(0.0, school_sd)
            for c in range(1, n_cohorts + 1):
                n_years = n_cohorts - c + 1
                for i in range(students_per_cohort):
                    white = int(rng.random() < 0.5)
                    female = int(rng.random() < 0.5)
                    lunch = int(rng.random() < 0.4)
                    ability = rng.normal(0.0, 0.5)
                    eligible = 0
                    for y in range(1, n_years + 1):
                        # absorbing: once eligible, always eligible
                        eligible = max(eligible, int(rng.random() < eligibility_hazard))
                        s = f"c{c}y{y}"
                        outcome = (
                            block_eff
                            + school_eff
                            + stratum_shift[s]
                            + ability
                            + 0.2 * white
                            - 0.1 * female
                            - 0.3 * lunch
                            + treated * tau[s]
                            + rng.normal(0.0, noise_sd)
                        )
                        rows.append(
                            {
                                "blocks": f"B{b:02d}",
                                "Sch": sch,
                                "EID": f"{sch}-c{c}-{i:03d}-y{y}",
                                "cohort_yr": s,
                                "treatment": treated,
                                "Grade": 3 + y - 1,
                                "Yrs": y,
                                "Race_White": white,
                                "Gend_Fem": female,
                                "Free_Lunch": lunch,
                                "Y": outcome,
                                "Eligible": float(eligible),
                            },
                        )

    df = pd.DataFrame(rows)
    if missing_eligible > 0.0:
        mask = rng.random(len(df)) < missing_eligible
        df.loc[mask, "Eligible"] = np.nan
    return df
