import pytest
import numpy as np
import pandas as pd
from pwrd.estimators.base import PWRDConfig
from pwrd.estimators.weights import (
    PWRDWeights,
    baseline_eligibility,
    compute_weights,
    pwrd_weights_from_moments,
)
from pwrd.exceptions import (
    DegenerateWeightsError,
    InvalidDataError,
    RankDeficiencyError,
    SingularCovarianceError,
    UnknownStratumError,
)
from pwrd.sim.dgp import simulate_stepped_wedge, stepped_wedge_strata

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture(scope="module")
def panel():
    return simulate_stepped_wedge(n_blocks=10, students_per_cohort=8, seed=2024)

@pytest.fixture
def control(panel):
    return panel.loc[panel['treatment'] == 0].reset_index(drop=True)

@pytest.fixture
def config():
    return PWRDConfig(strata=stepped_wedge_strata(3))

# ---------------------------------------------------------------------
# Weights from known moments
# ---------------------------------------------------------------------

def test_identity_covariance_scenario():
    p0 = pd.Series([0.3, 0.6], index=['a', 'b'])
    res = pwrd_weights_from_moments(p0, np.eye(2))
    assert np.allclose(res.raw_weights.to_numpy(), [0.3, 0.6])
    assert np.allclose(res.weights.to_numpy(), [1 / 3, 2 / 3])
    assert res.clamped == ()
    assert list(res.weights.index) == ['a', 'b']
    assert res.n_active == 2

def test_negative_raw_weight_is_clamped_to_exact_zero():
    # Positively correlated strata with unequal variance: Sigma^{-1} p0 ∝ [2.5, -0.5]
    p0 = pd.Series([0.5, 0.5], index=['a', 'b'])
    sigma = np.array([[1.0, 1.5], [1.5, 4.0]])
    res = pwrd_weights_from_moments(p0, sigma)
    assert res.raw_weights['a'] > 0
    assert res.raw_weights['b'] < 0
    assert res.weights['b'] == 0.0
    assert res.weights['a'] == 1.0
    assert res.clamped == ('b',)
    assert res.n_active == 1

def test_weights_scale_invariant_in_p0():
    p0 = np.array([0.1, 0.4, 0.25])
    sigma = np.array([[2.0, 0.3, 0.1], [0.3, 1.0, 0.2], [0.1, 0.2, 0.5]])
    w1 = pwrd_weights_from_moments(p0, sigma).weights.to_numpy()
    w2 = pwrd_weights_from_moments(37.0 * p0, sigma).weights.to_numpy()
    assert np.allclose(w1, w2)
    assert np.all(w1 >= 0)
    assert w1.sum() == pytest.approx(1.0)

def test_clamp_is_noop_for_feasible_raw_weights():
    p0 = np.array([0.2, 0.3, 0.5])
    sigma = np.diag([1.0, 2.0, 0.5])
    res = pwrd_weights_from_moments(p0, sigma)
    raw = res.raw_weights.to_numpy()
    assert np.all(raw >= 0)
    assert np.allclose(res.weights.to_numpy(), raw / raw.sum())
    assert res.clamped == ()
    assert list(res.weights.index) == ['s0', 's1', 's2']

def test_degenerate_weights_raise():
    with pytest.raises(DegenerateWeightsError) as excinfo:
        pwrd_weights_from_moments([0.0, 0.0], np.eye(2))
    assert np.array_equal(excinfo.value.raw_weights, [0.0, 0.0])

def test_singular_covariance_raises():
    with pytest.raises(SingularCovarianceError):
        pwrd_weights_from_moments([0.5, 0.5], np.ones((2, 2)))
    # Also catchable as a generic linear-algebra failure
    with pytest.raises(np.linalg.LinAlgError):
        pwrd_weights_from_moments([0.5, 0.5], np.zeros((2, 2)))

def test_moment_shape_and_finiteness_checked():
    with pytest.raises(ValueError, match="shape"):
        pwrd_weights_from_moments([0.5, 0.5], np.eye(3))
    with pytest.raises(ValueError, match="finite"):
        pwrd_weights_from_moments([0.5, np.nan], np.eye(2))

# ---------------------------------------------------------------------
# Baseline eligibility
# ---------------------------------------------------------------------

def test_baseline_eligibility_means(control, config):
    p0 = baseline_eligibility(control, config)
    expected = control.groupby('cohort_yr')['Eligible'].mean()
    assert list(p0.index) == list(config.strata)
    assert np.allclose(p0.to_numpy(), expected.reindex(list(config.strata)).to_numpy())

def test_baseline_eligibility_ignores_missing(config):
    df = simulate_stepped_wedge(seed=9, missing_eligible=0.2)
    ctrl = df.loc[df['treatment'] == 0]
    assert ctrl['Eligible'].isna().any()
    p0 = baseline_eligibility(ctrl, config)
    assert np.all(np.isfinite(p0.to_numpy()))
    assert p0['c1y1'] == pytest.approx(np.nanmean(ctrl.loc[ctrl['cohort_yr'] == 'c1y1', 'Eligible']))

def test_baseline_eligibility_all_missing_stratum(control, config):
    bad = control.copy()
    bad.loc[bad['cohort_yr'] == 'c3y1', 'Eligible'] = np.nan
    with pytest.raises(InvalidDataError, match="c3y1"):
        baseline_eligibility(bad, config)

def test_baseline_eligibility_requires_binary(control, config):
    bad = control.assign(Eligible=control['Eligible'] * 3)
    with pytest.raises(InvalidDataError, match="binary"):
        baseline_eligibility(bad, config)

# ---------------------------------------------------------------------
# Weights from control data
# ---------------------------------------------------------------------

def test_compute_weights_properties(control, config):
    w = compute_weights(control, config)
    assert list(w.index) == list(config.strata)
    assert np.all(w.to_numpy() >= 0)
    assert w.sum() == pytest.approx(1.0)

def test_compute_weights_deterministic(control, config):
    w1 = compute_weights(control, config)
    w2 = compute_weights(control.copy(), config)
    assert np.array_equal(w1.to_numpy(), w2.to_numpy())

def test_weight_result_intermediates(control, config):
    res = PWRDWeights(config).fit(control)
    fit = res.stratum_fit
    # Sigma is the CR2 covariance of the stratum model, clustered by block
    assert np.allclose(res.sigma.to_numpy(), fit.vcov.to_numpy())
    assert fit.model_info["n_clusters"] == control['blocks'].nunique()
    # With the intercept-only baseline the stratum effects are stratum means minus the grand mean
    grand = control['Y'].mean()
    means = control.groupby('cohort_yr')['Y'].mean().reindex(list(config.strata))
    assert np.allclose(fit.params.to_numpy(), means.to_numpy() - grand)
    assert np.allclose(res.baseline_fit.extra["yhat"], grand)
    # Raw weights solve Sigma w = p0
    assert np.allclose(res.sigma.to_numpy() @ res.raw_weights.to_numpy(), res.p0.to_numpy())

def test_baseline_formula_extension_point(control, config):
    cfg = PWRDConfig(strata=config.strata, baseline_formula="Race_White + Free_Lunch")
    res = PWRDWeights(cfg).fit(control)
    assert res.baseline_fit.var_names == ['Intercept', 'Race_White', 'Free_Lunch']
    assert res.weights.sum() == pytest.approx(1.0)

def test_fewer_blocks_than_strata_gives_singular_covariance(config):
    # Three blocks cannot identify a 6 x 6 stratum covariance
    df = simulate_stepped_wedge(n_blocks=3, students_per_cohort=8, seed=77)
    ctrl = df.loc[df['treatment'] == 0]
    assert ctrl['blocks'].nunique() < config.n_strata
    with pytest.raises(SingularCovarianceError, match="singular"):
        compute_weights(ctrl, config)

def test_float_coded_strata(control, config):
    codes = {s: float(i + 1) for i, s in enumerate(config.strata)}
    recoded = control.assign(cohort_yr=control['cohort_yr'].map(codes))
    cfg = PWRDConfig(strata=tuple(range(1, config.n_strata + 1)))
    w = compute_weights(recoded, cfg)
    assert list(w.index) == ['1', '2', '3', '4', '5', '6']
    assert np.allclose(w.to_numpy(), compute_weights(control, config).to_numpy())

def test_treated_rows_rejected(panel, config):
    with pytest.raises(InvalidDataError, match="control rows only"):
        compute_weights(panel, config)

def test_duplicated_stratum_rank_deficiency(control, config):
    dup = PWRDConfig(strata=(*config.strata, config.strata[0]))
    with pytest.raises(RankDeficiencyError) as excinfo:
        compute_weights(control, dup)
    assert excinfo.value.rank == len(config.strata)

def test_unlisted_stratum_raises(control, config):
    short = PWRDConfig(strata=config.strata[:-1])
    with pytest.raises(UnknownStratumError):
        compute_weights(control, short)

def test_missing_column_raises(control, config):
    with pytest.raises(InvalidDataError, match="blocks"):
        compute_weights(control.drop(columns=['blocks']), config)

def test_result_before_fit(config):
    with pytest.raises(RuntimeError):
        _ = PWRDWeights(config).result
