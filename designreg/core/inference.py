"""Confidence intervals, p-values and approximate degrees of freedom.

Inference here is analytic: two-sided t (or normal) intervals and p-values
built from an estimate, its standard error and degrees of freedom.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from scipy import stats

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

__all__ = ["add_cis_pvals", "normal_inference", "t_inference", "welch_dof"]


def t_inference(
    est: ArrayLike,
    se: ArrayLike,
    df: ArrayLike,
    alpha: float = 0.05,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """Two-sided t intervals and p-values.

    Entries with a missing (NaN) estimate, standard error or df yield NaN.
    An infinite df gives the normal limit.
    """
    est_a = np.atleast_1d(np.asarray(est, dtype=np.float64))
    se_a = np.atleast_1d(np.asarray(se, dtype=np.float64))
    df_a = np.broadcast_to(np.asarray(df, dtype=np.float64), est_a.shape).copy()
    ci_lower = np.full(est_a.shape, np.nan, dtype=np.float64)
    ci_upper = np.full(est_a.shape, np.nan, dtype=np.float64)
    p = np.full(est_a.shape, np.nan, dtype=np.float64)
    ok = np.isfinite(est_a) & np.isfinite(se_a) & ~np.isnan(df_a) & (df_a > 0)
    if not np.any(ok):
        return ci_lower, ci_upper, p
    dfo = df_a[ok]
    finite_df = np.isfinite(dfo)
    crit = np.empty(dfo.shape, dtype=np.float64)
    crit[finite_df] = stats.t.ppf(1.0 - alpha / 2.0, dfo[finite_df])
    crit[~finite_df] = stats.norm.ppf(1.0 - alpha / 2.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        tstat = np.abs(est_a[ok] / se_a[ok])
    pv = np.empty(dfo.shape, dtype=np.float64)
    pv[finite_df] = 2.0 * stats.t.sf(tstat[finite_df], dfo[finite_df])
    pv[~finite_df] = 2.0 * stats.norm.sf(tstat[~finite_df])
    ci_lower[ok] = est_a[ok] - crit * se_a[ok]
    ci_upper[ok] = est_a[ok] + crit * se_a[ok]
    p[ok] = pv
    return ci_lower, ci_upper, p


def normal_inference(
    est: ArrayLike,
    se: ArrayLike,
    alpha: float = 0.05,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """Two-sided normal intervals and p-values (used by Horvitz-Thompson)."""
    return t_inference(est, se, np.inf, alpha)


def welch_dof(
    var1: float, n1: int, var0: float, n0: int,
) -> float:
    """Welch-Satterthwaite degrees of freedom for a difference of two means."""
    a = var1 / n1
    b = var0 / n0
    denom = a * a / (n1 - 1.0) + b * b / (n0 - 1.0)
    if denom <= 0.0 or not np.isfinite(denom):
        return float("nan")
    return float((a + b) ** 2 / denom)


def add_cis_pvals(
    est: ArrayLike,
    se: ArrayLike,
    df: ArrayLike,
    alpha: float,
    *,
    ci: bool = True,
) -> dict[str, NDArray[np.float64]]:
    """Assemble the inference columns of a coefficient table."""
    est_a = np.atleast_1d(np.asarray(est, dtype=np.float64))
    if not ci:
        nan = np.full(est_a.shape, np.nan, dtype=np.float64)
        return {"ci_lower": nan, "ci_upper": nan.copy(), "p_value": nan.copy()}
    lo, hi, p = t_inference(est_a, se, df, alpha)
    return {"ci_lower": lo, "ci_upper": hi, "p_value": p}
