"""Cluster-robust variance estimators (CR0, Stata CR1, CR2).

CR2 follows Bell and McCaffrey (2002) as generalized by Pustejovsky and
Tipton (2018): the adjustment matrices are symmetric square roots of the
Moore-Penrose pseudoinverse of ``(I - H)_s (I - H)_s'``, so clusters whose
block is singular (e.g. cluster-aligned fixed effects) are handled without
failing. Degrees of freedom for CR2 use the Satterthwaite approximation
computed separately for each requested coefficient.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from designreg.core import linalg as la
from designreg.exceptions import (
    DegenerateClusterError,
    InputShapeError,
    UnsupportedVarianceTypeError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CR_TYPES",
    "ClusterPartition",
    "cluster_partition",
    "cr2_adjustments",
    "cr_vcov",
    "normalize_cr_type",
]

CR_TYPES: tuple[str, ...] = ("CR0", "stata", "CR2")


def normalize_cr_type(se_type: str) -> str:
    """Canonical CR label; ``stata`` is kept verbatim."""
    raw = str(se_type).strip()
    if raw.lower() == "stata":
        return "stata"
    canon = raw.upper()
    if canon not in {"CR0", "CR2"}:
        raise UnsupportedVarianceTypeError(
            "se_type must be either 'CR0', 'stata' or 'CR2' when clusters are "
            f"specified; got {se_type!r}.",
        )
    return canon


@dataclass(frozen=True)
class ClusterPartition:
    """Partition of row indices into clusters.

    ``codes[i]`` is the cluster index of row ``i`` (0..S-1, clusters in
    sorted label order); ``members[s]`` lists the rows of cluster ``s``.
    """

    codes: NDArray[np.int64]
    labels: NDArray[np.object_]
    members: tuple[NDArray[np.int64], ...]

    @property
    def n_clusters(self) -> int:
        return len(self.members)

    @property
    def n_obs(self) -> int:
        return int(self.codes.shape[0])

    def sizes(self) -> NDArray[np.int64]:
        return np.array([m.size for m in self.members], dtype=np.int64)


def cluster_partition(labels: Sequence | NDArray, n_obs: int | None = None) -> ClusterPartition:
    """Build a :class:`ClusterPartition` from arbitrary hashable labels."""
    arr = np.asarray(labels)
    if arr.ndim != 1:
        raise InputShapeError("clusters must be 1D.")
    if n_obs is not None and arr.shape[0] != n_obs:
        raise InputShapeError(
            f"Length mismatch: clusters has {arr.shape[0]} entries, expected {n_obs}.",
        )
    codes, uniques = pd.factorize(arr, sort=True)
    if np.any(codes < 0):
        raise InputShapeError("clusters must not contain missing values.")
    codes = codes.astype(np.int64)
    order = np.argsort(codes, kind="stable")
    bounds = np.cumsum(np.bincount(codes, minlength=len(uniques)))[:-1]
    members = tuple(np.split(order, bounds))
    return ClusterPartition(
        codes=codes,
        labels=np.asarray(uniques, dtype=object),
        members=members,
    )


def _require_clusters(partition: ClusterPartition) -> None:
    if partition.n_clusters < 2:
        raise DegenerateClusterError(
            "Cluster-robust inference needs at least two clusters; "
            f"got {partition.n_clusters}.",
        )


def cr2_adjustments(
    X: NDArray[np.float64],
    xtx_inv: NDArray[np.float64],
    partition: ClusterPartition,
) -> list[NDArray[np.float64]]:
    """Per-cluster CR2 adjustment matrices ``A_s = (B_s^+)^{1/2}``.

    ``B_s = (I - H)_s (I - H)_s'`` for the ``n_s x n`` row block of the
    residual maker. ``I - H`` is symmetric and idempotent, so ``B_s`` equals
    the diagonal block ``(I - H)_ss``.
    """
    out: list[NDArray[np.float64]] = []
    for idx in partition.members:
        Xs = X[idx]
        out.append(la.pinv_sqrt(np.eye(idx.size) - Xs @ xtx_inv @ Xs.T))
    return out


def _cr2_dof(
    X: NDArray[np.float64],
    xtx_inv: NDArray[np.float64],
    partition: ClusterPartition,
    adjust: list[NDArray[np.float64]],
    which: NDArray[np.int64],
) -> NDArray[np.float64]:
    """Bell-McCaffrey / Satterthwaite degrees of freedom for CR2.

    For coefficient ``k`` the per-cluster vectors are
    ``p_s = (I - H)_s' A_s X_s (X'X)^{-1} z_k`` (length n), and
    ``df_k = tr(G'G)^2 / ||G'G||_F^2`` with ``G = [p_1, ..., p_S]``.
    """
    n = X.shape[0]
    S = partition.n_clusters
    G = np.zeros((which.size, n, S), dtype=np.float64)
    XB = X @ xtx_inv  # n x r
    for s, idx in enumerate(partition.members):
        u = adjust[s] @ XB[idx][:, which]  # n_s x m
        # (I - H)_s' u = E_s u - X (X'X)^{-1} X_s' u
        p = -XB @ (X[idx].T @ u)
        p[idx] += u
        G[:, :, s] = p.T
    dof = np.full(which.size, np.nan, dtype=np.float64)
    for j in range(which.size):
        GtG = G[j].T @ G[j]
        denom = float(np.sum(GtG * GtG))
        if denom > 0.0:
            dof[j] = float(np.trace(GtG)) ** 2 / denom
    return dof


def cr_vcov(
    X: la.Matrix,
    residuals: NDArray[np.float64],
    xtx_inv: NDArray[np.float64],
    clusters: ClusterPartition | Sequence | NDArray,
    se_type: str = "CR2",
    *,
    which_covs: Sequence[int] | NDArray[np.bool_] | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Cluster-robust variance matrix and per-coefficient degrees of freedom.

    Parameters
    ----------
    X : array-like, shape (n, r)
        Design restricted to the estimable columns (sqrt-weight transformed
        for weighted fits).
    residuals : ndarray, shape (n,)
        Residuals of the same system.
    xtx_inv : ndarray, shape (r, r)
        ``(X'X)^{-1}`` over the estimable columns.
    clusters : ClusterPartition or array-like
        Cluster labels aligned with the rows of ``X``.
    se_type : {'CR0', 'stata', 'CR2'}
    which_covs : sequence of int or bool mask, optional
        Coefficients for which CR2 degrees of freedom are computed; the
        remaining entries of the df vector are NaN. Defaults to all.

    Returns
    -------
    vcov : ndarray, shape (r, r)
    dof : ndarray, shape (r,)

    """
    kind = normalize_cr_type(se_type)
    Xd = la.to_dense(X)
    e = np.asarray(residuals, dtype=np.float64).reshape(-1)
    n, r = Xd.shape
    if e.shape[0] != n:
        raise InputShapeError(f"residuals have length {e.shape[0]}; expected {n}.")
    partition = (
        clusters if isinstance(clusters, ClusterPartition) else cluster_partition(clusters, n)
    )
    if partition.n_obs != n:
        raise InputShapeError(
            f"Length mismatch: clusters cover {partition.n_obs} rows, expected {n}.",
        )
    _require_clusters(partition)
    S = partition.n_clusters

    if which_covs is None:
        which = np.arange(r, dtype=np.int64)
    else:
        w = np.asarray(which_covs)
        which = np.flatnonzero(w) if w.dtype == bool else w.astype(np.int64)

    if kind in {"CR0", "stata"}:
        scores = np.zeros((S, r), dtype=np.float64)
        np.add.at(scores, partition.codes, Xd * e[:, None])
        V = xtx_inv @ (scores.T @ scores) @ xtx_inv
        if kind == "stata":
            if n <= r:
                warnings.warn(
                    f"No residual degrees of freedom (n={n}, rank={r}); {kind} variance is undefined.",
                    RuntimeWarning,
                    stacklevel=2,
                )
                V = np.full((r, r), np.nan, dtype=np.float64)
            else:
                V = V * ((n - 1.0) / (n - r)) * (S / (S - 1.0))
        dof = np.full(r, np.nan, dtype=np.float64)
        dof[which] = float(S - 1)
        return (V + V.T) * 0.5, dof

    adjust = cr2_adjustments(Xd, xtx_inv, partition)
    scores = np.zeros((S, r), dtype=np.float64)
    for s, idx in enumerate(partition.members):
        scores[s] = Xd[idx].T @ (adjust[s] @ e[idx])
    V = xtx_inv @ (scores.T @ scores) @ xtx_inv

    dof = np.full(r, np.nan, dtype=np.float64)
    if which.size:
        dof[which] = _cr2_dof(Xd, xtx_inv, partition, adjust, which)
    LOGGER.debug("CR2 computed over %d clusters (df for %d coefficients)", S, which.size)
    return (V + V.T) * 0.5, dof
