import numpy as np
import pytest

from designreg.core import clustered as cr
from designreg.core import linalg as la
from designreg.core import robust as hc
from designreg.exceptions import (
    DegenerateClusterError,
    InputShapeError,
    UnsupportedVarianceTypeError,
)

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def clustered_data(rng):
    S, m = 8, 5
    n = S * m
    clusters = np.repeat(np.arange(S), m)
    u_c = rng.standard_normal(S)[clusters]
    X = np.column_stack([np.ones(n), rng.standard_normal(n), rng.uniform(size=n)])
    y = X @ np.array([0.5, 1.0, -2.0]) + u_c + rng.standard_normal(n)
    fit = la.solve_least_squares(X, y)
    return X, fit, clusters

# ---------------------------------------------------------------------
# Partition
# ---------------------------------------------------------------------

def test_cluster_partition_any_labels():
    part = cr.cluster_partition(["b", "a", "b", "c", "a"])
    assert part.n_clusters == 3
    assert part.n_obs == 5
    assert list(part.labels) == ["a", "b", "c"]
    assert np.array_equal(part.codes, [1, 0, 1, 2, 0])
    assert np.array_equal(part.members[0], [1, 4])
    assert np.array_equal(part.sizes(), [2, 2, 1])

def test_cluster_partition_errors():
    with pytest.raises(InputShapeError, match="Length mismatch"):
        cr.cluster_partition([1, 2, 3], n_obs=4)
    with pytest.raises(InputShapeError, match="missing"):
        cr.cluster_partition(np.array([1.0, np.nan, 2.0]))

def test_single_cluster_is_degenerate(clustered_data):
    X, fit, _ = clustered_data
    one = np.zeros(X.shape[0])
    for se_type in ("CR0", "stata", "CR2"):
        with pytest.raises(DegenerateClusterError, match="at least two clusters"):
            cr.cr_vcov(X, fit.residuals, fit.xtx_inv, one, se_type)

def test_normalize_cr_type():
    assert cr.normalize_cr_type("cr2") == "CR2"
    assert cr.normalize_cr_type("Stata") == "stata"
    with pytest.raises(UnsupportedVarianceTypeError):
        cr.normalize_cr_type("HC2")

# ---------------------------------------------------------------------
# CR0 and stata
# ---------------------------------------------------------------------

def test_cr0_matches_manual(clustered_data):
    X, fit, clusters = clustered_data
    e = fit.residuals
    bread = np.linalg.inv(X.T @ X)
    meat = np.zeros((3, 3))
    for s in np.unique(clusters):
        score = X[clusters == s].T @ e[clusters == s]
        meat += np.outer(score, score)
    V, dof = cr.cr_vcov(X, e, fit.xtx_inv, clusters, "CR0")
    assert np.allclose(V, bread @ meat @ bread)
    assert np.all(dof == 7.0)

def test_stata_scaling(clustered_data):
    X, fit, clusters = clustered_data
    n, k = X.shape
    S = 8
    V0, _ = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, clusters, "CR0")
    V1, dof = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, clusters, "stata")
    assert np.allclose(V1, V0 * (n - 1) / (n - k) * S / (S - 1))
    assert np.all(dof == S - 1)

def test_stata_without_residual_dof_warns():
    X = np.eye(2)
    fit = la.solve_least_squares(X, np.array([1.0, 2.0]))
    with pytest.warns(RuntimeWarning, match="No residual degrees of freedom"):
        V, dof = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, [0, 1], "stata")
    assert np.isnan(V).all()
    assert np.all(dof == 1.0)

# ---------------------------------------------------------------------
# CR2
# ---------------------------------------------------------------------

def test_cr2_singleton_clusters_equal_hc2(clustered_data):
    X, fit, _ = clustered_data
    singletons = np.arange(X.shape[0])
    V_cr2, _ = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, singletons, "CR2")
    V_hc2 = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, "HC2")
    assert np.allclose(V_cr2, V_hc2)

def test_cr2_matches_direct_computation(clustered_data):
    X, fit, clusters = clustered_data
    e = fit.residuals
    bread = np.linalg.inv(X.T @ X)
    M = np.eye(X.shape[0]) - X @ bread @ X.T
    meat = np.zeros((3, 3))
    for s in np.unique(clusters):
        idx = clusters == s
        evals, evecs = np.linalg.eigh(M[np.ix_(idx, idx)])
        A = evecs @ np.diag(evals ** -0.5) @ evecs.T
        score = X[idx].T @ A @ e[idx]
        meat += np.outer(score, score)
    V, _ = cr.cr_vcov(X, e, fit.xtx_inv, clusters, "CR2")
    assert np.allclose(V, bread @ meat @ bread)

def test_cr2_intercept_only_balanced_dof():
    # With equal cluster sizes and an intercept-only model, df = S - 1
    S, m = 5, 3
    clusters = np.repeat(np.arange(S), m)
    X = np.ones((S * m, 1))
    y = np.arange(S * m, dtype=float) ** 0.5
    fit = la.solve_least_squares(X, y)
    _, dof = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, clusters, "CR2")
    assert dof[0] == pytest.approx(S - 1)

def test_cr2_dof_only_for_selected(clustered_data):
    X, fit, clusters = clustered_data
    V_all, dof_all = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, clusters, "CR2")
    V_sel, dof_sel = cr.cr_vcov(
        X, fit.residuals, fit.xtx_inv, clusters, "CR2", which_covs=[1],
    )
    assert np.allclose(V_all, V_sel)
    assert np.isnan(dof_sel[0]) and np.isnan(dof_sel[2])
    assert dof_sel[1] == pytest.approx(dof_all[1])
    assert np.all(np.isfinite(dof_all)) and np.all(dof_all > 0)

def test_cr2_invariant_to_cluster_order(clustered_data, rng):
    X, fit, clusters = clustered_data
    V, dof = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, clusters, "CR2")
    # Relabel clusters and shuffle rows
    relabel = np.array(["q", "w", "e", "r", "t", "y", "u", "i"])[clusters]
    perm = rng.permutation(X.shape[0])
    V_p, dof_p = cr.cr_vcov(
        X[perm], fit.residuals[perm], fit.xtx_inv, relabel[perm], "CR2",
    )
    assert np.allclose(V, V_p)
    assert np.allclose(dof, dof_p)

def test_cr2_cluster_fixed_effects_are_finite(rng):
    # Cluster dummies make each (I - H)_ss singular
    S, m = 6, 4
    n = S * m
    clusters = np.repeat(np.arange(S), m)
    D = (clusters[:, None] == np.arange(S)[None, :]).astype(float)
    x = rng.standard_normal(n)
    X = np.column_stack([x, D])
    y = 0.7 * x + rng.standard_normal(S)[clusters] + rng.standard_normal(n)
    fit = la.solve_least_squares(X, y)
    V, dof = cr.cr_vcov(X, fit.residuals, fit.xtx_inv, clusters, "CR2", which_covs=[0])
    assert np.isfinite(V[0, 0]) and V[0, 0] > 0
    assert np.isfinite(dof[0]) and dof[0] > 0
