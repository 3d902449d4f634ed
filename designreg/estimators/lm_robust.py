"""Least squares with heteroskedasticity- and cluster-robust standard errors.

:func:`lm_robust_fit` is the array-level front end: it solves the (optionally
weighted) least-squares problem, computes the requested sandwich variance and
assembles a coefficient table with estimates, standard errors, degrees of
freedom, confidence intervals and p-values. :class:`LMRobust` wraps it in the
estimator-object interface shared by the other estimators.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from designreg.core import clustered as cr
from designreg.core import inference as inf
from designreg.core import linalg as la
from designreg.core import robust as hc
from designreg.exceptions import InputShapeError, UnsupportedVarianceTypeError

from .base import (
    BaseEstimator,
    EstimationResult,
    FitConfig,
    as_1d,
    coef_table,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["LMRobust", "lm_robust_fit", "resolve_se_type"]


def resolve_se_type(se_type: str | None, *, clustered: bool) -> str:
    """Validate ``se_type`` against the presence of clusters.

    ``None`` gives ``HC2`` (no clusters) or ``CR2`` (clusters); ``stata``
    means ``HC1`` without clusters and the Stata CR1 correction with clusters;
    ``none`` skips variance estimation.
    """
    if se_type is None:
        return "CR2" if clustered else "HC2"
    raw = str(se_type).strip()
    if raw.lower() == "none":
        return "none"
    if clustered:
        if raw.lower() == "classical" or raw.upper() in {"HC0", "HC1", "HC2", "HC3"}:
            raise UnsupportedVarianceTypeError(
                f"se_type {se_type!r} ignores the cluster structure; use 'CR0', "
                "'stata' or 'CR2' when clusters are specified.",
            )
        return cr.normalize_cr_type(raw)
    if raw.upper() in {"CR0", "CR2"}:
        raise UnsupportedVarianceTypeError(
            f"se_type {se_type!r} requires clusters; use one of 'classical', "
            "'HC0', 'HC1', 'stata', 'HC2' or 'HC3' without clusters.",
        )
    return hc.normalize_hc_type(raw)


def _design_matrix(
    X: Any, var_names: Sequence[str] | None,
) -> tuple[NDArray[np.float64], list[str]]:
    if var_names is None and isinstance(X, pd.DataFrame):
        var_names = [str(c) for c in X.columns]
    Xd = np.asarray(X, dtype=np.float64)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    if Xd.ndim != 2:
        raise InputShapeError("X must be a 2D design matrix.")
    names = (
        [str(v) for v in var_names]
        if var_names is not None
        else [f"X{j + 1}" for j in range(Xd.shape[1])]
    )
    if len(names) != Xd.shape[1]:
        raise InputShapeError(
            f"var_names has {len(names)} entries but X has {Xd.shape[1]} columns.",
        )
    if len(set(names)) != len(names):
        raise InputShapeError("var_names must be unique.")
    return np.array(Xd, dtype=np.float64, copy=True), names


def _check_weights(weights: Any, n: int) -> NDArray[np.float64]:
    w = as_1d(weights, "weights")
    if w.shape[0] != n:
        raise InputShapeError(f"Length mismatch: weights has {w.shape[0]}, expected {n}.")
    if np.any(w < 0.0):
        raise InputShapeError("weights must not be negative.")
    if not np.any(w > 0.0):
        raise InputShapeError("weights must not all be zero.")
    return w


def _which_coefs(
    names: list[str],
    keep: NDArray[np.bool_],
    coefficient_name: tuple[str, ...] | None,
) -> NDArray[np.int64]:
    """Positions (within the estimable coefficients) that need CR2 df."""
    kept_names = [nm for nm, k in zip(names, keep) if k]
    if coefficient_name is None:
        return np.arange(len(kept_names), dtype=np.int64)
    unknown = [c for c in coefficient_name if c not in names]
    if unknown:
        raise InputShapeError(f"coefficient_name not found among coefficients: {unknown}.")
    return np.array(
        [j for j, nm in enumerate(kept_names) if nm in coefficient_name],
        dtype=np.int64,
    )


def _fit(  # noqa: PLR0913
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    names: list[str],
    weights: NDArray[np.float64] | None,
    clusters: Any,
    config: FitConfig,
) -> EstimationResult:
    n, k = X.shape
    if y.shape[0] != n:
        raise InputShapeError(f"Length mismatch: y has {y.shape[0]} rows, X has {n}.")
    la.assert_all_finite(X, y)
    if weights is not None and np.any(weights == 0.0):
        pos = weights > 0.0
        LOGGER.info("Dropping %d observation(s) with zero weight.", int(np.sum(~pos)))
        if clusters is not None:
            cl_arr = np.asarray(clusters, dtype=object)
            if cl_arr.shape[0] != n:
                raise InputShapeError(
                    f"Length mismatch: clusters has {cl_arr.shape[0]}, expected {n}.",
                )
            clusters = cl_arr[pos]
        X, y, weights = X[pos], y[pos], weights[pos]
        n = X.shape[0]
    partition = cr.cluster_partition(clusters, n) if clusters is not None else None
    kind = resolve_se_type(config.se_type, clustered=partition is not None)

    weighted = weights is not None
    if weighted:
        weight_mean = float(np.mean(weights))
        sw = np.sqrt(weights / weight_mean)
        Xs = X * sw[:, None]
        ys = y * sw
    else:
        weight_mean = 1.0
        Xs, ys = X, y

    fit = la.solve_least_squares(
        Xs, ys, try_cholesky=config.try_cholesky, var_names=names,
    )
    keep = fit.keep
    rank = fit.rank
    dof_resid = n - rank
    if dof_resid > 0:
        # transformed residuals carry w / mean(w); rescale to sum(w e^2)
        res_var = float(np.sum(fit.residuals**2)) * weight_mean / dof_resid
    else:
        res_var = float("nan")

    se = np.full(k, np.nan, dtype=np.float64)
    df = np.full(k, np.nan, dtype=np.float64)
    vcov_df: pd.DataFrame | None = None
    Xk = Xs[:, keep]
    kept_names = [nm for nm, keep_j in zip(names, keep) if keep_j]

    if kind != "none" and rank > 0:
        if partition is None:
            V = hc.hc_vcov(Xk, fit.residuals, fit.xtx_inv, kind)
            dof_k = np.full(rank, hc.hc_dof(n, rank), dtype=np.float64)
        else:
            which = _which_coefs(names, keep, config.coefficient_name) if kind == "CR2" else None
            V, dof_k = cr.cr_vcov(
                Xk, fit.residuals, fit.xtx_inv, partition, kind, which_covs=which,
            )
        with np.errstate(invalid="ignore"):
            se[keep] = np.sqrt(np.diag(V))
        df[keep] = dof_k
        if config.return_vcov:
            vcov_df = pd.DataFrame(V, index=kept_names, columns=kept_names)

    inference = inf.add_cis_pvals(fit.coef, se, df, config.alpha, ci=config.ci)
    if not config.ci:
        # df is only reported alongside intervals
        df[:] = np.nan
    table = coef_table(names, fit.coef, se, df, inference)

    model_info: dict[str, Any] = {
        "Estimator": "lm_robust",
        "se_type": kind,
        "N": n,
        "k": k,
        "rank": rank,
        "weighted": weighted,
        "method": fit.method,
    }
    if partition is not None:
        model_info["n_clusters"] = partition.n_clusters
    LOGGER.debug("lm_robust fit: N=%d, k=%d, rank=%d, se_type=%s", n, k, rank, kind)
    return EstimationResult(
        table=table,
        n_obs=n,
        vcov=vcov_df,
        res_var=res_var,
        alpha=config.alpha,
        model_info=model_info,
        extra={"dropped": [nm for nm, keep_j in zip(names, keep) if not keep_j]},
    )


def lm_robust_fit(  # noqa: PLR0913
    y: Any,
    X: Any,
    *,
    weights: Any = None,
    clusters: Any = None,
    se_type: str | None = None,
    ci: bool = True,
    alpha: float = 0.05,
    coefficient_name: str | Sequence[str] | None = None,
    return_vcov: bool = True,
    try_cholesky: bool = False,
    var_names: Sequence[str] | None = None,
) -> EstimationResult:
    """Least-squares fit with robust standard errors.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcome.
    X : array-like, shape (n, k)
        Design matrix including any intercept column. Collinear columns are
        reported with NaN estimates.
    weights : array-like, optional
        Non-negative observation weights; normalized by their mean and
        applied as ``sqrt(w)`` to both sides.
    clusters : array-like, optional
        Cluster labels aligned with the rows of ``X``.
    se_type : str, optional
        ``classical``, ``HC0``, ``HC1``, ``stata``, ``HC2`` (default) or
        ``HC3`` without clusters; ``CR0``, ``stata`` or ``CR2`` (default)
        with clusters; ``none`` to skip variance estimation.
    ci : bool, default True
        Compute confidence intervals and p-values. With ``ci=False`` the df
        column is NaN as well.
    alpha : float, default 0.05
        Two-sided significance level of the intervals.
    coefficient_name : str or sequence of str, optional
        Restrict CR2 degrees-of-freedom computation to these coefficients.
    return_vcov : bool, default True
        Attach the variance-covariance matrix of the estimable coefficients.
    try_cholesky : bool, default False
        Solve via Cholesky of ``X'X`` (full column rank designs only).
    var_names : sequence of str, optional
        Coefficient names; defaults to DataFrame columns or ``X1..Xk``.

    Returns
    -------
    EstimationResult

    """
    config = FitConfig(
        se_type=se_type,
        ci=ci,
        alpha=alpha,
        return_vcov=return_vcov,
        try_cholesky=try_cholesky,
        coefficient_name=coefficient_name,  # type: ignore[arg-type]
    )
    y_arr = as_1d(y, "y")
    X_arr, names = _design_matrix(X, var_names)
    w = _check_weights(weights, X_arr.shape[0]) if weights is not None else None
    return _fit(y_arr, X_arr, names, w, clusters, config)


class LMRobust(BaseEstimator):
    """Robust linear regression in estimator-object form.

    Examples
    --------
    >>> import numpy as np
    >>> from designreg.estimators.lm_robust import LMRobust
    >>> from designreg.estimators.base import FitConfig
    >>> X = np.column_stack([np.ones(4), [1.0, 0.0, 1.0, 0.0]])
    >>> model = LMRobust([5.0, 3.0, 7.0, 1.0], X, var_names=["const", "z"])
    >>> res = model.fit(FitConfig(se_type="HC2"))
    >>> round(float(res.params["z"]), 6)
    4.0

    """

    def __init__(
        self,
        y: Any,
        X: Any,
        *,
        weights: Any = None,
        clusters: Any = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        self.y_orig = as_1d(y, "y")
        self.X_orig, self._var_names = _design_matrix(X, var_names)
        self._n_obs, self._n_features = self.X_orig.shape
        self.weights = (
            _check_weights(weights, self._n_obs) if weights is not None else None
        )
        self.clusters = clusters

    @property
    def var_names(self) -> list[str]:
        return list(self._var_names)

    def fit(self, config: FitConfig | None = None) -> EstimationResult:
        """Fit the model; ``config`` defaults to :class:`FitConfig()`."""
        cfg = FitConfig() if config is None else config
        self._results = _fit(
            self.y_orig,
            self.X_orig,
            self._var_names,
            self.weights,
            self.clusters,
            cfg,
        )
        return self._results
