import logging

import pytest
import numpy as np
import pandas as pd
from pwrd import pwrd_test
from pwrd.estimators.base import PWRDConfig
from pwrd.estimators.weights import compute_weights
from pwrd.exceptions import InvalidDataError
from pwrd.sim.dgp import simulate_stepped_wedge, stepped_wedge_strata

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture(scope="module")
def panel():
    return simulate_stepped_wedge(n_blocks=12, students_per_cohort=10, effects=1.0, seed=17)

@pytest.fixture
def config():
    return PWRDConfig(strata=stepped_wedge_strata(3))

# ---------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------

def test_pwrd_test_end_to_end(panel, config):
    out = pwrd_test(panel, config)
    w = out.weights.weights
    assert list(w.index) == list(config.strata)
    assert np.all(w.to_numpy() >= 0)
    assert w.sum() == pytest.approx(1.0)
    assert 0.0 <= out.p_value <= 1.0
    # Weights come from control rows only
    control = panel.loc[panel['treatment'] == 0]
    assert np.array_equal(w.to_numpy(), compute_weights(control, config).to_numpy())
    # Two clustering levels stay separate
    assert out.weights.stratum_fit.model_info["n_clusters"] == panel['blocks'].nunique()
    assert out.test.fit.model_info["n_clusters"] == panel['Sch'].nunique()

def test_pwrd_test_detects_large_effect(panel, config):
    out = pwrd_test(panel, config)
    assert out.t_stat > 0
    assert out.p_value < 0.05
    assert out.test.estimate == pytest.approx(1.0, abs=0.6)

def test_summary_frame(panel, config):
    table = pwrd_test(panel, config).summary_frame()
    assert list(table.index) == list(config.strata)
    assert list(table.columns) == ['p0', 'raw_weight', 'weight', 'effect', 'effect_se']
    assert table['weight'].sum() == pytest.approx(1.0)
    assert np.all(table.loc[table['raw_weight'] < 0, 'weight'] == 0.0)

def test_pwrd_test_logs(panel, config, caplog):
    caplog.set_level(logging.INFO, logger="pwrd")
    pwrd_test(panel, config)
    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("PWRD analysis:") for m in messages)
    assert any(m.startswith("Weighted contrast:") for m in messages)

# ---------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------

def test_treatment_must_be_binary(panel, config):
    bad = panel.assign(treatment=panel['treatment'].astype(float))
    bad.loc[0, 'treatment'] = np.nan
    with pytest.raises(InvalidDataError, match="binary"):
        pwrd_test(bad, config)

def test_requires_control_rows(panel, config):
    treated = panel.loc[panel['treatment'] == 1]
    with pytest.raises(InvalidDataError, match="No control rows"):
        pwrd_test(treated, config)

def test_missing_treatment_column(panel, config):
    with pytest.raises(InvalidDataError, match="treatment"):
        pwrd_test(panel.drop(columns=['treatment']), config)
