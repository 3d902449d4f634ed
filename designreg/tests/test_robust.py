import numpy as np
import pytest

from designreg.core import linalg as la
from designreg.core import robust as hc
from designreg.exceptions import UnsupportedVarianceTypeError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def hetero_data(rng):
    n = 60
    X = np.column_stack([np.ones(n), rng.standard_normal(n), rng.uniform(size=n)])
    y = X @ np.array([1.0, 2.0, -1.0]) + rng.standard_normal(n) * (1.0 + X[:, 2])
    fit = la.solve_least_squares(X, y)
    return X, fit

# ---------------------------------------------------------------------
# Four-unit scenario (hand-computed values)
# ---------------------------------------------------------------------

@pytest.mark.parametrize(
    ("se_type", "slope_var", "intercept_var"),
    [
        ("classical", 2.0, 1.0),
        ("HC0", 1.0, 0.5),
        ("HC1", 2.0, 1.0),
        ("stata", 2.0, 1.0),
        ("HC2", 2.0, 1.0),
        ("HC3", 4.0, 2.0),
    ],
)
def test_four_unit_variances(four_unit_experiment, se_type, slope_var, intercept_var):
    y, _, X = four_unit_experiment
    fit = la.solve_least_squares(X, y)
    assert np.allclose(fit.coef, [2.0, 4.0])
    assert np.allclose(fit.residuals, [-1.0, 1.0, 1.0, -1.0])
    assert np.allclose(la.hat_values(X, fit.xtx_inv), 0.5)
    V = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, se_type)
    assert V[1, 1] == pytest.approx(slope_var)
    assert V[0, 0] == pytest.approx(intercept_var)
    assert hc.hc_dof(4, fit.rank) == 2.0

# ---------------------------------------------------------------------
# Sandwich formulas
# ---------------------------------------------------------------------

def test_hc_formulas_match_manual(hetero_data):
    X, fit = hetero_data
    n, k = X.shape
    e = fit.residuals
    bread = np.linalg.inv(X.T @ X)
    h = np.diag(X @ bread @ X.T)

    def sandwich(omega):
        return bread @ (X.T * omega) @ X @ bread

    assert np.allclose(hc.hc_vcov(X, e, fit.xtx_inv, "HC0"), sandwich(e**2))
    assert np.allclose(hc.hc_vcov(X, e, fit.xtx_inv, "HC1"), sandwich(e**2) * n / (n - k))
    assert np.allclose(hc.hc_vcov(X, e, fit.xtx_inv, "HC2"), sandwich(e**2 / (1 - h)))
    assert np.allclose(hc.hc_vcov(X, e, fit.xtx_inv, "HC3"), sandwich(e**2 / (1 - h) ** 2))
    assert np.allclose(
        hc.hc_vcov(X, e, fit.xtx_inv, "classical"), (e @ e) / (n - k) * bread,
    )

def test_hc_vcov_is_symmetric(hetero_data):
    X, fit = hetero_data
    V = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, "HC2")
    assert np.array_equal(V, V.T)

def test_precomputed_leverage_is_used(hetero_data):
    X, fit = hetero_data
    h = la.hat_values(X, fit.xtx_inv)
    V1 = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, "HC3", leverage=h)
    V2 = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, "HC3")
    assert np.allclose(V1, V2)

# ---------------------------------------------------------------------
# Labels and degenerate cases
# ---------------------------------------------------------------------

def test_normalize_hc_type():
    assert hc.normalize_hc_type("stata") == "HC1"
    assert hc.normalize_hc_type("hc2") == "HC2"
    assert hc.normalize_hc_type("Classical") == "classical"
    with pytest.raises(UnsupportedVarianceTypeError, match="se_type must be one of"):
        hc.normalize_hc_type("CR2")

def test_leverage_one_warns():
    # A dummy that picks out a single observation has leverage 1
    X = np.column_stack([np.ones(5), [1.0, 0.0, 0.0, 0.0, 0.0]])
    y = np.array([3.0, 1.0, 2.0, 4.0, 0.5])
    fit = la.solve_least_squares(X, y)
    with pytest.warns(RuntimeWarning, match="leverage 1"):
        V = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, "HC2")
    assert not np.all(np.isfinite(V))

def test_no_residual_dof_gives_nan():
    X = np.column_stack([np.ones(2), [0.0, 1.0]])
    y = np.array([1.0, 2.0])
    fit = la.solve_least_squares(X, y)
    with pytest.warns(RuntimeWarning, match="No residual degrees of freedom"):
        V = hc.hc_vcov(X, fit.residuals, fit.xtx_inv, "classical")
    assert np.all(np.isnan(V))
