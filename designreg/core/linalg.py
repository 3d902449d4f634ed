"""Linear algebra routines for least-squares fitting.

This module provides the least-squares solvers (pivoted QR, opt-in Cholesky)
and the matrix helpers used by the robust variance estimators. Rank
determination follows R's ``lm.fit`` convention and explicit inversion of
``X'X`` is avoided on the default path.
"""

from __future__ import annotations

import logging
import os
import warnings
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp

from designreg.exceptions import InputShapeError, RankDeficiencyWarning

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

# Matrix type alias
Matrix = Any

# R lm.fit documented default: tol = 1e-7 * max(|diag(R)|)
DEFAULT_RANK_TOL: float = 1e-7

__all__ = [
    "DEFAULT_RANK_TOL",
    "LeastSquaresFit",
    "Matrix",
    "assert_all_finite",
    "eig_tol",
    "hat_values",
    "pinv_sqrt",
    "rank_from_diag",
    "rank_tolerance",
    "safe_cholesky",
    "solve_least_squares",
    "to_dense",
]


@lru_cache(maxsize=1)
def rank_tolerance() -> float:
    """Relative QR rank tolerance, overridable via ``DESIGNREG_RANK_TOL``."""
    raw = str(os.environ.get("DESIGNREG_RANK_TOL", "")).strip()
    if not raw:
        return DEFAULT_RANK_TOL
    try:
        tol = float(raw)
    except ValueError:
        LOGGER.warning(
            "Ignoring DESIGNREG_RANK_TOL=%r (not a number); using %g.",
            raw,
            DEFAULT_RANK_TOL,
        )
        return DEFAULT_RANK_TOL
    if not (0.0 < tol < 1.0):
        LOGGER.warning(
            "Ignoring DESIGNREG_RANK_TOL=%r (must lie in (0, 1)); using %g.",
            raw,
            DEFAULT_RANK_TOL,
        )
        return DEFAULT_RANK_TOL
    return tol


def _check_array_finiteness(arr: NDArray[np.float64]) -> None:
    if not np.all(np.isfinite(arr)):
        raise InputShapeError(
            "Input contains NA/NaN/Inf; please drop/clean rows before fitting.",
        )


def assert_all_finite(*arrays: Matrix) -> None:
    """Raise InputShapeError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        if sp.issparse(a):
            _check_array_finiteness(np.asarray(a.data))
        else:
            _check_array_finiteness(np.asarray(a, dtype=np.float64))


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object (ndarray, DataFrame, sparse) to float64 ndarray."""
    if sp.issparse(A):
        return np.asarray(A.todense(), dtype=np.float64)
    return np.array(A, dtype=np.float64, copy=True)


def rank_from_diag(diagR: NDArray[np.float64], *, tol: float | None = None) -> int:
    """Numerical rank from the diagonal of a pivoted QR factor.

    Columns whose ``|R_jj|`` does not exceed ``tol * max|diag(R)|`` are
    treated as linearly dependent on the preceding pivots.
    """
    d = np.abs(np.asarray(diagR, dtype=np.float64).reshape(-1))
    if d.size == 0:
        return 0
    rel = rank_tolerance() if tol is None else float(tol)
    return int(np.sum(d > rel * float(np.max(d))))


@dataclass(frozen=True)
class LeastSquaresFit:
    """Outcome of a least-squares solve.

    ``coef`` has one entry per column of ``X``; columns dropped for rank
    deficiency hold ``NaN``. ``xtx_inv`` is the inverse of ``X'X`` restricted
    to the kept columns (in original column order).
    """

    coef: NDArray[np.float64]
    keep: NDArray[np.bool_]
    rank: int
    fitted: NDArray[np.float64]
    residuals: NDArray[np.float64]
    xtx_inv: NDArray[np.float64]
    method: str

    @property
    def n_obs(self) -> int:
        return int(self.residuals.shape[0])

    @property
    def dropped(self) -> NDArray[np.int64]:
        return np.flatnonzero(~self.keep)


def safe_cholesky(A: Matrix, *, lower: bool = True) -> NDArray[np.float64]:
    """Strict Cholesky factorization without implicit ridges.

    Raises np.linalg.LinAlgError if A is not positive definite.
    """
    Ad = to_dense(A)
    Ad = (Ad + Ad.T) * 0.5
    try:
        return sla.cholesky(Ad, lower=lower, check_finite=False)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise np.linalg.LinAlgError(f"Cholesky factorization failed: {exc}") from exc


def _solve_cholesky(
    Xd: NDArray[np.float64], yd: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Normal-equation solve; valid only for full column rank ``Xd``."""
    G = Xd.T @ Xd
    L = safe_cholesky(G, lower=True)
    coef = sla.cho_solve((L, True), Xd.T @ yd, check_finite=False)
    xtx_inv = sla.cho_solve((L, True), np.eye(G.shape[0]), check_finite=False)
    if not np.all(np.isfinite(coef)):
        raise np.linalg.LinAlgError("Cholesky solve produced non-finite coefficients")
    return coef, (xtx_inv + xtx_inv.T) * 0.5


def _solve_pivoted_qr(
    Xd: NDArray[np.float64], yd: NDArray[np.float64], *, tol: float | None,
) -> tuple[NDArray[np.float64], NDArray[np.bool_], NDArray[np.float64]]:
    """Least squares via Householder QR with column pivoting."""
    p = Xd.shape[1]
    Q, R, P = sla.qr(Xd, mode="economic", pivoting=True)
    r = rank_from_diag(np.diag(R), tol=tol)
    coef = np.full(p, np.nan, dtype=np.float64)
    keep = np.zeros(p, dtype=bool)
    if r == 0:
        return coef, keep, np.zeros((0, 0), dtype=np.float64)
    R11 = R[:r, :r]
    coef[P[:r]] = sla.solve_triangular(R11, Q[:, :r].T @ yd, lower=False)
    keep[P[:r]] = True
    # (X'X)^{-1} = R^{-1} R^{-T} in pivot order; reorder to column order
    R11_inv = sla.solve_triangular(R11, np.eye(r), lower=False)
    A_piv = R11_inv @ R11_inv.T
    order = np.argsort(P[:r])
    return coef, keep, A_piv[np.ix_(order, order)]


def solve_least_squares(
    X: Matrix,
    y: Matrix,
    *,
    try_cholesky: bool = False,
    tol: float | None = None,
    var_names: Sequence[str] | None = None,
) -> LeastSquaresFit:
    """Solve ``min ||y - X b||`` and report rank, residuals and ``(X'X)^{-1}``.

    Parameters
    ----------
    X : array-like, shape (n, k)
        Design matrix; may be rank deficient.
    y : array-like, shape (n,)
        Outcome vector.
    try_cholesky : bool, default False
        Use a Cholesky factorization of ``X'X`` instead of pivoted QR. Only
        valid for full column rank designs; if the factorization fails the
        solver falls back to QR with a warning. Under (near) collinearity the
        two paths may keep different columns.
    tol : float, optional
        Relative rank tolerance for the QR path (default ``rank_tolerance()``).
    var_names : sequence of str, optional
        Column names used in the rank-deficiency warning.

    Returns
    -------
    LeastSquaresFit

    """
    Xd = to_dense(X)
    yd = to_dense(y).reshape(-1)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    if Xd.ndim != 2:
        raise InputShapeError("X must be a 2D design matrix.")
    n, p = Xd.shape
    if n == 0 or p == 0:
        raise InputShapeError(f"X must be non-empty; got shape {Xd.shape}.")
    if yd.shape[0] != n:
        raise InputShapeError(f"Length mismatch: y has {yd.shape[0]} rows, X has {n}.")
    assert_all_finite(Xd, yd)

    method = "qr"
    coef = keep = xtx_inv = None
    if try_cholesky:
        try:
            coef, xtx_inv = _solve_cholesky(Xd, yd)
            keep = np.ones(p, dtype=bool)
            method = "cholesky"
        except np.linalg.LinAlgError as exc:
            LOGGER.debug("Cholesky path failed: %s", exc)
            warnings.warn(
                "Cholesky factorization of X'X failed (design not of full column "
                "rank); falling back to pivoted QR.",
                RankDeficiencyWarning,
                stacklevel=2,
            )
    if method == "qr":
        coef, keep, xtx_inv = _solve_pivoted_qr(Xd, yd, tol=tol)

    rank = int(np.sum(keep))
    if rank < p:
        names = list(var_names) if var_names is not None else [f"X{j + 1}" for j in range(p)]
        dropped = [names[j] for j in np.flatnonzero(~keep)]
        LOGGER.info("Dropping %d collinear column(s): %s", len(dropped), dropped)
        warnings.warn(
            f"Design matrix is rank deficient (rank {rank} < {p}); "
            f"coefficients not estimable: {', '.join(map(str, dropped))}.",
            RankDeficiencyWarning,
            stacklevel=2,
        )

    fitted = Xd[:, keep] @ coef[keep] if rank > 0 else np.zeros(n, dtype=np.float64)
    return LeastSquaresFit(
        coef=coef,
        keep=keep,
        rank=rank,
        fitted=fitted,
        residuals=yd - fitted,
        xtx_inv=np.asarray(xtx_inv, dtype=np.float64),
        method=method,
    )


def hat_values(X: Matrix, xtx_inv: NDArray[np.float64]) -> NDArray[np.float64]:
    """Leverage values ``h_ii = x_i' (X'X)^{-1} x_i``.

    ``X`` must already be restricted to the columns that ``xtx_inv`` covers.
    """
    Xd = to_dense(X)
    return np.einsum("ij,jk,ik->i", Xd, xtx_inv, Xd)


def eig_tol(evals: NDArray[np.float64], size: int) -> float:
    """Scale-aware threshold below which eigenvalues count as zero.

    eps * max|eigenvalue| * size, matching MATLAB's ``eps(max(evals)) * n``.
    """
    ev = np.asarray(evals, dtype=np.float64)
    max_eval = float(np.max(np.abs(ev))) if ev.size else 0.0
    if max_eval == 0.0:
        return float(np.finfo(float).eps)
    return float(np.finfo(float).eps) * max_eval * max(int(size), 1)


def pinv_sqrt(B: Matrix) -> NDArray[np.float64]:
    """Symmetric square root of the Moore-Penrose pseudoinverse of PSD ``B``.

    Eigen-decomposes ``B``, inverts the eigenvalues above :func:`eig_tol`,
    takes square roots and reassembles ``V diag(1/sqrt(l)) V'``. Null
    directions of a singular ``B`` map to zero instead of failing.
    """
    Bd = to_dense(B)
    Bd = (Bd + Bd.T) * 0.5
    evals, evecs = np.linalg.eigh(Bd)
    tol = eig_tol(evals, Bd.shape[0])
    inv_sqrt = np.zeros_like(evals)
    pos = evals > tol
    inv_sqrt[pos] = 1.0 / np.sqrt(evals[pos])
    return (evecs * inv_sqrt) @ evecs.T
