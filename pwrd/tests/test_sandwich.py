import pytest
import numpy as np
import scipy.linalg as sla
from pwrd.core.sandwich import cr2_vcov
from pwrd.exceptions import InvalidDataError, SingularClusterAdjustmentError

# ---------------------------------------------------------------------
# Fixtures and brute-force references
# ---------------------------------------------------------------------

@pytest.fixture
def clustered_data():
    rng = np.random.default_rng(7)
    sizes = [3, 5, 4, 6, 2, 5, 4, 3]
    cl = np.repeat(np.arange(len(sizes)), sizes)
    n = cl.shape[0]
    X = np.column_stack([np.ones(n), rng.standard_normal(n), rng.integers(0, 2, n)])
    y = X @ np.array([1.0, 0.5, -0.3]) + rng.normal(0, 0.7, len(sizes))[cl] + rng.standard_normal(n)
    beta = np.linalg.lstsq(X, y, rcond=None)[0]
    e = y - X @ beta
    return X, e, cl


def _cr2_brute_force(X, e, cl):
    """CR2 from the explicit n x n hat matrix and scipy's matrix square root."""
    M = np.linalg.inv(X.T @ X)
    H = X @ M @ X.T
    meat = np.zeros((X.shape[1], X.shape[1]))
    for g in np.unique(cl):
        idx = np.flatnonzero(cl == g)
        B = np.eye(idx.size) - H[np.ix_(idx, idx)]
        A = np.linalg.inv(np.real(sla.sqrtm(B)))
        s = X[idx].T @ A @ e[idx]
        meat += np.outer(s, s)
    return M @ meat @ M


def _df_brute_force(X, cl, c):
    """Satterthwaite df from G = P'P with P_j = (I - H)[:, j] A_j X_j M c."""
    n = X.shape[0]
    M = np.linalg.inv(X.T @ X)
    IH = np.eye(n) - X @ M @ X.T
    cols = []
    for g in np.unique(cl):
        idx = np.flatnonzero(cl == g)
        A = np.linalg.inv(np.real(sla.sqrtm(IH[np.ix_(idx, idx)])))
        cols.append(IH[:, idx] @ A @ X[idx] @ M @ c)
    P = np.column_stack(cols)
    G = P.T @ P
    return np.trace(G) ** 2 / np.sum(G * G)

# ---------------------------------------------------------------------
# Covariance
# ---------------------------------------------------------------------

def test_cr2_matches_brute_force(clustered_data):
    X, e, cl = clustered_data
    res = cr2_vcov(X, e, cl)
    assert res.n_clusters == 8
    assert np.allclose(res.vcov, _cr2_brute_force(X, e, cl), rtol=1e-8, atol=1e-12)

def test_cr2_is_symmetric_psd(clustered_data):
    X, e, cl = clustered_data
    V = cr2_vcov(X, e, cl).vcov
    assert np.array_equal(V, V.T)
    assert np.min(np.linalg.eigvalsh(V)) > -1e-12

def test_cr2_singleton_clusters_is_hc2():
    rng = np.random.default_rng(3)
    n = 40
    X = np.column_stack([np.ones(n), rng.standard_normal(n)])
    y = X @ np.array([0.5, 1.0]) + rng.standard_normal(n)
    beta = np.linalg.lstsq(X, y, rcond=None)[0]
    e = y - X @ beta
    M = np.linalg.inv(X.T @ X)
    h = np.einsum("ij,jk,ik->i", X, M, X)
    hc2 = M @ (X.T * (e**2 / (1.0 - h))) @ X @ M
    res = cr2_vcov(X, e, np.arange(n))
    assert np.allclose(res.vcov, hc2)

def test_cr2_balanced_intercept_only():
    # With J equal clusters and an intercept only, CR2 = J/(J-1) * CR0 and df = J - 1
    rng = np.random.default_rng(11)
    J, m = 6, 5
    cl = np.repeat(np.arange(J), m)
    y = rng.standard_normal(J * m)
    X = np.ones((J * m, 1))
    e = y - y.mean()
    res = cr2_vcov(X, e, cl)
    sums = np.bincount(cl, weights=e)
    cr0 = np.sum(sums**2) / (J * m) ** 2
    assert res.vcov[0, 0] == pytest.approx(J / (J - 1) * cr0)
    assert res.contrast_df([1.0]) == pytest.approx(J - 1)

def test_cr2_large_clusters_keep_small_adjustments():
    # Clusters far larger than p, one smaller than p, and a dummy that is zero in half of them
    rng = np.random.default_rng(19)
    sizes = [40, 40, 40, 2]
    cl = np.repeat(np.arange(len(sizes)), sizes)
    n = cl.shape[0]
    X = np.column_stack([np.ones(n), rng.standard_normal(n), (cl < 2) * rng.integers(0, 2, n)])
    y = X @ np.array([0.2, 0.8, -0.5]) + rng.normal(0, 0.5, len(sizes))[cl] + rng.standard_normal(n)
    beta = np.linalg.lstsq(X, y, rcond=None)[0]
    e = y - X @ beta
    res = cr2_vcov(X, e, cl)
    assert np.allclose(res.vcov, _cr2_brute_force(X, e, cl), rtol=1e-8, atol=1e-12)
    p = X.shape[1]
    for g, n_j in enumerate(sizes):
        r = min(n_j, p)
        assert res.bases[g].shape == (n_j, r)
        assert res.adjustments[g].shape == (r, r)
    c = np.array([0.0, 0.4, 0.6])
    assert res.contrast_df(c) == pytest.approx(_df_brute_force(X, cl, c), rel=1e-8)

def test_adjust_matches_explicit_inverse_sqrt(clustered_data):
    X, e, cl = clustered_data
    res = cr2_vcov(X, e, cl)
    M = np.linalg.inv(X.T @ X)
    idx = res.rows[3]
    A = np.linalg.inv(np.real(sla.sqrtm(np.eye(idx.size) - X[idx] @ M @ X[idx].T)))
    v = np.arange(idx.size, dtype=float)
    assert np.allclose(res.adjust(3, v), A @ v)

def test_cluster_labels_any_hashable(clustered_data):
    X, e, cl = clustered_data
    labels = np.array([f"block-{g}" for g in cl], dtype=object)
    a = cr2_vcov(X, e, cl).vcov
    b = cr2_vcov(X, e, labels).vcov
    assert np.allclose(a, b)

# ---------------------------------------------------------------------
# Degrees of freedom
# ---------------------------------------------------------------------

def test_contrast_df_matches_brute_force(clustered_data):
    X, e, cl = clustered_data
    res = cr2_vcov(X, e, cl)
    for c in (np.array([0.0, 1.0, 0.0]), np.array([0.0, 0.3, 0.7]), np.array([1.0, 0.0, 0.0])):
        assert res.contrast_df(c) == pytest.approx(_df_brute_force(X, cl, c), rel=1e-8)

def test_contrast_df_scale_invariant(clustered_data):
    X, e, cl = clustered_data
    res = cr2_vcov(X, e, cl)
    c = np.array([0.2, -1.0, 0.5])
    assert res.contrast_df(c) == pytest.approx(res.contrast_df(5.0 * c))

def test_coefficient_df_bounds(clustered_data):
    X, e, cl = clustered_data
    df = cr2_vcov(X, e, cl).coefficient_df()
    assert df.shape == (3,)
    # Satterthwaite df never exceeds the number of clusters
    assert np.all(df > 0)
    assert np.all(df <= 8 + 1e-8)

def test_contrast_length_checked(clustered_data):
    X, e, cl = clustered_data
    res = cr2_vcov(X, e, cl)
    with pytest.raises(ValueError, match="length"):
        res.contrast_variance([1.0, 0.0])

# ---------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------

def test_single_observation_cluster_with_own_column_raises():
    # The last row is the only one with the second dummy: its leverage is one
    X = np.array([[1.0, 0.0], [1.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
    e = np.array([0.1, -0.2, 0.1, 0.0])
    cl = np.array(["a", "a", "b", "c"])
    with pytest.raises(SingularClusterAdjustmentError) as excinfo:
        cr2_vcov(X, e, cl)
    assert excinfo.value.cluster == "c"
    assert excinfo.value.min_eigenvalue <= 1e-12

def test_cluster_length_mismatch():
    X = np.ones((4, 1))
    with pytest.raises(InvalidDataError, match="cluster_ids length"):
        cr2_vcov(X, np.zeros(4), [1, 2, 3])

def test_missing_cluster_label():
    X = np.ones((4, 1))
    with pytest.raises(InvalidDataError, match="missing"):
        cr2_vcov(X, np.zeros(4), np.array([1.0, 2.0, np.nan, 2.0]))
