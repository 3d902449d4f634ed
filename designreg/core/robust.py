"""Heteroskedasticity-robust (sandwich) variance estimators.

Implements the classical, HC0, HC1 (Stata), HC2 and HC3 variance estimators
for a least-squares fit. All estimators share the sandwich form

    V = (X'X)^{-1} X' diag(omega) X (X'X)^{-1}

and differ only in the per-observation weights ``omega`` built from the
residuals and leverage values.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING

import numpy as np

from designreg.core import linalg as la
from designreg.exceptions import InputShapeError, UnsupportedVarianceTypeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["HC_TYPES", "hc_dof", "hc_vcov", "normalize_hc_type"]

HC_TYPES: tuple[str, ...] = ("classical", "HC0", "HC1", "HC2", "HC3")

# 1 - h below this counts as leverage one
_LEVERAGE_ONE_TOL = 1e-10


def normalize_hc_type(se_type: str) -> str:
    """Map user spellings to canonical HC labels (``stata`` -> ``HC1``)."""
    raw = str(se_type).strip()
    if raw.lower() == "stata":
        return "HC1"
    if raw.lower() == "classical":
        return "classical"
    canon = raw.upper()
    if canon not in HC_TYPES:
        raise UnsupportedVarianceTypeError(
            "se_type must be one of 'HC0', 'HC1', 'stata', 'HC2', 'HC3' or "
            f"'classical' without clusters; got {se_type!r}.",
        )
    return canon


def _omega(
    se_type: str,
    e: NDArray[np.float64],
    h: NDArray[np.float64] | None,
) -> NDArray[np.float64]:
    e2 = e * e
    if se_type in {"HC0", "HC1"}:
        return e2
    if h is None:
        raise InputShapeError(f"{se_type} requires leverage values.")
    one_minus_h = 1.0 - h
    at_one = one_minus_h <= _LEVERAGE_ONE_TOL
    if np.any(at_one):
        warnings.warn(
            f"Some observations have leverage 1; {se_type} standard errors are "
            "not finite for this design.",
            RuntimeWarning,
            stacklevel=3,
        )
    with np.errstate(divide="ignore", invalid="ignore"):
        omega = e2 / one_minus_h if se_type == "HC2" else e2 / (one_minus_h * one_minus_h)
    omega[at_one] = np.nan
    return omega


def hc_vcov(
    X: la.Matrix,
    residuals: NDArray[np.float64],
    xtx_inv: NDArray[np.float64],
    se_type: str = "HC2",
    *,
    leverage: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Sandwich variance-covariance matrix for the estimable coefficients.

    Parameters
    ----------
    X : array-like, shape (n, r)
        Design matrix restricted to the kept (estimable) columns. For weighted
        fits pass the sqrt-weight transformed matrix.
    residuals : ndarray, shape (n,)
        Residuals from the same (transformed) system.
    xtx_inv : ndarray, shape (r, r)
        ``(X'X)^{-1}`` over the kept columns.
    se_type : str
        One of ``classical``, ``HC0``, ``HC1``/``stata``, ``HC2``, ``HC3``.
    leverage : ndarray, optional
        Hat values; computed from ``X`` and ``xtx_inv`` when omitted.

    Returns
    -------
    ndarray, shape (r, r)

    """
    kind = normalize_hc_type(se_type)
    Xd = la.to_dense(X)
    e = np.asarray(residuals, dtype=np.float64).reshape(-1)
    n, r = Xd.shape
    if e.shape[0] != n:
        raise InputShapeError(f"residuals have length {e.shape[0]}; expected {n}.")
    if xtx_inv.shape != (r, r):
        raise InputShapeError(f"xtx_inv has shape {xtx_inv.shape}; expected {(r, r)}.")
    dof = n - r
    if kind in {"classical", "HC1"} and dof <= 0:
        warnings.warn(
            f"No residual degrees of freedom (n={n}, rank={r}); {kind} variance is undefined.",
            RuntimeWarning,
            stacklevel=2,
        )
        return np.full((r, r), np.nan, dtype=np.float64)

    if kind == "classical":
        sigma2 = float(e @ e) / float(dof)
        return sigma2 * xtx_inv

    h = None
    if kind in {"HC2", "HC3"}:
        h = la.hat_values(Xd, xtx_inv) if leverage is None else np.asarray(leverage, dtype=np.float64)
    omega = _omega(kind, e, h)
    meat = (Xd * omega[:, None]).T @ Xd
    V = xtx_inv @ meat @ xtx_inv
    if kind == "HC1":
        V = V * (float(n) / float(dof))
    return (V + V.T) * 0.5


def hc_dof(n_obs: int, rank: int) -> float:
    """Residual degrees of freedom shared by all non-cluster estimators."""
    return float(n_obs - rank)
