"""Condition probability matrices for Horvitz-Thompson estimation.

A condition probability matrix ``P`` for ``n`` units is a symmetric
``2n x 2n`` matrix made of four ``n x n`` quadrants:

* upper left: ``Pr(Z_i = 0, Z_j = 0)``, with the marginal ``Pr(Z_i = 0)`` on
  the diagonal;
* upper right / lower left: ``Pr(Z_i = 0, Z_j = 1)``, with a zero diagonal
  since a unit cannot be in both conditions;
* lower right: ``Pr(Z_i = 1, Z_j = 1)``, with ``Pr(Z_i = 1)`` on the diagonal.

Rows and columns are named ``0_1 .. 0_n, 1_1 .. 1_n``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np
import pandas as pd

from designreg.design.declaration import (
    BlockedClusteredDesign,
    BlockedDesign,
    ClusteredDesign,
    CompleteDesign,
    CustomDesign,
    SimpleDesign,
)
from designreg.exceptions import DesignMismatchError, InputShapeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from designreg.design.declaration import RandomizationDeclaration

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ConditionPrMatrix",
    "JointPr",
    "as_condition_pr_matrix",
    "declaration_to_condition_pr_mat",
    "gen_joint_pr_complete",
    "gen_pr_matrix_block",
    "gen_pr_matrix_cluster",
    "gen_pr_matrix_complete",
    "gen_pr_matrix_simple",
    "permutations_to_condition_pr_mat",
]

_UNIFORM_TOL = 1e-12


@dataclass(frozen=True, eq=False)
class ConditionPrMatrix:
    """A validated ``2n x 2n`` condition probability matrix."""

    values: NDArray[np.float64]

    def __post_init__(self) -> None:
        P = np.array(self.values, dtype=np.float64, copy=True)
        if P.ndim != 2 or P.shape[0] != P.shape[1] or P.shape[0] % 2 != 0:
            raise InputShapeError(
                f"condition probability matrix must be square with even size; got {P.shape}.",
            )
        if not np.all(np.isfinite(P)):
            raise InputShapeError("condition probability matrix must be finite.")
        if np.any(P < -1e-12) or np.any(P > 1.0 + 1e-12):
            raise InputShapeError("condition probability matrix entries must lie in [0, 1].")
        if not np.allclose(P, P.T, rtol=0.0, atol=1e-10):
            raise InputShapeError("condition probability matrix must be symmetric.")
        n = P.shape[0] // 2
        if np.any(np.abs(np.diag(P[:n, n:])) > 1e-12):
            raise InputShapeError(
                "condition probability matrix must have Pr(Z_i = 0, Z_i = 1) = 0 for every unit.",
            )
        d = np.diag(P)
        if not np.allclose(d[:n] + d[n:], 1.0, rtol=0.0, atol=1e-8):
            raise InputShapeError(
                "condition probability matrix marginals Pr(Z_i = 0) + Pr(Z_i = 1) must equal 1.",
            )
        P.setflags(write=False)
        object.__setattr__(self, "values", P)

    @property
    def n_units(self) -> int:
        return self.values.shape[0] // 2

    @property
    def names(self) -> list[str]:
        n = self.n_units
        return [f"0_{i}" for i in range(1, n + 1)] + [f"1_{i}" for i in range(1, n + 1)]

    def marginals(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Return ``(Pr(Z_i = 0), Pr(Z_i = 1))`` read off the diagonal."""
        d = np.diag(self.values)
        n = self.n_units
        return d[:n].copy(), d[n:].copy()

    def quadrant(self, row_condition: int, col_condition: int) -> NDArray[np.float64]:
        n = self.n_units
        r = slice(row_condition * n, (row_condition + 1) * n)
        c = slice(col_condition * n, (col_condition + 1) * n)
        return self.values[r, c]

    def subset(self, units: Sequence[int] | NDArray[np.int64]) -> ConditionPrMatrix:
        """Restrict to a subset of units (keeps both conditions)."""
        idx = np.asarray(units, dtype=np.int64)
        ids = np.concatenate([idx, idx + self.n_units])
        return ConditionPrMatrix(self.values[np.ix_(ids, ids)])

    def to_frame(self) -> pd.DataFrame:
        names = self.names
        return pd.DataFrame(np.array(self.values), index=names, columns=names)

    def __array__(self, dtype: Any = None, copy: Any = None) -> NDArray[np.float64]:
        return np.array(self.values, dtype=dtype)


def as_condition_pr_matrix(obj: Any, n_units: int | None = None) -> ConditionPrMatrix:
    """Coerce an ndarray / DataFrame / ConditionPrMatrix and check its size."""
    cpm = obj if isinstance(obj, ConditionPrMatrix) else ConditionPrMatrix(np.asarray(obj))
    if n_units is not None and cpm.n_units != n_units:
        raise InputShapeError(
            f"condition_pr_mat covers {cpm.n_units} units; the data have {n_units}.",
        )
    return cpm


class JointPr(NamedTuple):
    """Joint probabilities for a pair of distinct units under complete assignment."""

    p00: float
    p10: float
    p11: float


def gen_joint_pr_complete(pr: float, n_total: int) -> JointPr:
    """Pairwise joint probabilities for complete assignment of ``pr * n_total`` units.

    When ``pr * n_total`` is fractional the design treats ``floor`` units with
    probability ``1 - remainder`` and ``floor + 1`` units with probability
    ``remainder``; joint probabilities are the corresponding mixture of the
    exact without-replacement probabilities.
    """
    n = int(n_total)
    if n < 2:
        return JointPr(math.nan, math.nan, math.nan)
    n_treated = float(pr) * n
    if abs(n_treated - round(n_treated)) < 1e-9:
        n_treated = float(round(n_treated))
    n_floor = math.floor(n_treated)
    remainder = n_treated - n_floor
    n_control = n - n_floor

    p11 = (
        remainder * ((n_floor + 1) / n) * (n_floor / (n - 1))
        + (1 - remainder) * (n_floor / n) * ((n_floor - 1) / (n - 1))
    )
    p10 = (
        remainder * ((n_control - 1) / n) * ((n_floor + 1) / (n - 1))
        + (1 - remainder) * (n_control / n) * (n_floor / (n - 1))
    )
    p00 = (
        remainder * ((n_control - 1) / n) * ((n_control - 2) / (n - 1))
        + (1 - remainder) * (n_control / n) * ((n_control - 1) / (n - 1))
    )
    return JointPr(p00=p00, p10=p10, p11=p11)


def _assemble(
    m00: NDArray[np.float64],
    m01: NDArray[np.float64],
    m11: NDArray[np.float64],
) -> NDArray[np.float64]:
    return np.block([[m00, m01], [m01.T, m11]])


def gen_pr_matrix_simple(prob: Sequence[float] | NDArray[np.float64]) -> NDArray[np.float64]:
    """Independent Bernoulli assignment with unit probabilities ``prob``."""
    p1 = np.asarray(prob, dtype=np.float64).reshape(-1)
    n = p1.shape[0]
    v = np.concatenate([1.0 - p1, p1])
    P = np.outer(v, v)
    np.fill_diagonal(P, v)
    idx = np.arange(n)
    P[idx, n + idx] = 0.0
    P[n + idx, idx] = 0.0
    return P


def _check_uniform(prob: NDArray[np.float64], what: str) -> float:
    if prob.size and float(np.ptp(prob)) > _UNIFORM_TOL:
        raise DesignMismatchError(
            f"Treatment probabilities must be fixed for {what}; "
            f"got values ranging over [{prob.min():g}, {prob.max():g}].",
        )
    return float(prob[0])


def gen_pr_matrix_complete(pr: float, n_total: int) -> NDArray[np.float64]:
    """Complete assignment of ``pr * n_total`` out of ``n_total`` units."""
    n = int(n_total)
    joint = gen_joint_pr_complete(pr, n)
    eye = np.eye(n, dtype=bool)
    m00 = np.where(eye, 1.0 - pr, joint.p00)
    m10 = np.where(eye, 0.0, joint.p10)
    m11 = np.where(eye, pr, joint.p11)
    return _assemble(m00, m10, m11)


def gen_pr_matrix_cluster(
    clusters: Sequence | NDArray,
    treat_probs: Sequence[float] | NDArray[np.float64],
    simple: bool = False,
) -> NDArray[np.float64]:
    """Clustered assignment, simple (independent clusters) or complete.

    Units of the same cluster always share a condition, so within a cluster
    the same-condition joint probability equals the cluster marginal and the
    cross-condition probability is zero.
    """
    cl = np.asarray(clusters, dtype=object).reshape(-1)
    p = np.asarray(treat_probs, dtype=np.float64).reshape(-1)
    if cl.shape[0] != p.shape[0]:
        raise InputShapeError(
            f"clusters ({cl.shape[0]}) and treat_probs ({p.shape[0]}) differ in length.",
        )
    codes, levels = pd.factorize(cl, sort=True)
    n_clust = len(levels)
    first = np.array([np.flatnonzero(codes == c)[0] for c in range(n_clust)], dtype=np.int64)
    cluster_probs = p[first]
    if np.any(np.abs(p - cluster_probs[codes]) > _UNIFORM_TOL):
        raise DesignMismatchError(
            "Treatment probabilities must be constant within each cluster.",
        )
    same = codes[:, None] == codes[None, :]
    pu = cluster_probs[codes]

    if simple:
        m11 = np.where(same, pu[:, None], np.outer(pu, pu))
        m00 = np.where(same, 1.0 - pu[:, None], np.outer(1.0 - pu, 1.0 - pu))
        m01 = np.where(same, 0.0, np.outer(1.0 - pu, pu))
        return _assemble(m00, m01, m11)

    pr = _check_uniform(cluster_probs, "complete clustered designs")
    joint = gen_joint_pr_complete(pr, n_clust)
    m00 = np.where(same, 1.0 - pr, joint.p00)
    m10 = np.where(same, 0.0, joint.p10)
    m11 = np.where(same, pr, joint.p11)
    return _assemble(m00, m10, m11)


def gen_pr_matrix_block(
    blocks: Sequence | NDArray,
    prob: Sequence[float] | NDArray[np.float64],
    clusters: Sequence | NDArray | None = None,
) -> NDArray[np.float64]:
    """Complete (optionally clustered) assignment within independent blocks.

    Entries for units in different blocks are products of the units' own
    marginals; within-block entries come from the complete (or complete
    clustered) builder applied to the block alone.
    """
    bl = np.asarray(blocks, dtype=object).reshape(-1)
    p1 = np.asarray(prob, dtype=np.float64).reshape(-1)
    n = bl.shape[0]
    if p1.shape[0] != n:
        raise InputShapeError(f"prob has length {p1.shape[0]}; expected {n}.")
    cl = None if clusters is None else np.asarray(clusters, dtype=object).reshape(-1)
    v = np.concatenate([1.0 - p1, p1])
    P = np.outer(v, v)
    codes, levels = pd.factorize(bl, sort=True)
    for b, level in enumerate(levels):
        units = np.flatnonzero(codes == b)
        ids = np.concatenate([units, n + units])
        if cl is None:
            pr = _check_uniform(p1[units], f"blocked designs (block {level!r})")
            P[np.ix_(ids, ids)] = gen_pr_matrix_complete(pr, units.size)
        else:
            P[np.ix_(ids, ids)] = gen_pr_matrix_cluster(cl[units], p1[units], simple=False)
    return P


def permutations_to_condition_pr_mat(permutations: Any) -> ConditionPrMatrix:
    """Empirical condition probability matrix from realized assignments.

    Parameters
    ----------
    permutations : array-like, shape (n, R)
        One column per realized assignment; treated units coded 1, control 0.

    """
    perms = np.asarray(permutations, dtype=np.float64)
    if perms.ndim == 1:
        perms = perms.reshape(-1, 1)
    if perms.ndim != 2 or perms.shape[1] == 0:
        raise InputShapeError("permutations must be a 2D (units x realizations) matrix.")
    if not np.all((perms == 0.0) | (perms == 1.0)):
        raise InputShapeError("Permutations matrix must only have 0s and 1s in it.")
    M = np.vstack([1.0 - perms, perms])
    return ConditionPrMatrix((M @ M.T) / perms.shape[1])


def declaration_to_condition_pr_mat(declaration: RandomizationDeclaration) -> ConditionPrMatrix:
    """Build the condition probability matrix implied by a declaration."""
    if isinstance(declaration, SimpleDesign):
        P = gen_pr_matrix_simple(declaration.prob)
    elif isinstance(declaration, CompleteDesign):
        pr = _check_uniform(declaration.prob, "complete randomized designs")
        P = gen_pr_matrix_complete(pr, declaration.n_units)
    elif isinstance(declaration, ClusteredDesign):
        P = gen_pr_matrix_cluster(
            declaration.clusters, declaration.prob, simple=declaration.simple,
        )
    elif isinstance(declaration, BlockedClusteredDesign):
        P = gen_pr_matrix_block(
            declaration.blocks, declaration.prob, clusters=declaration.clusters,
        )
    elif isinstance(declaration, BlockedDesign):
        P = gen_pr_matrix_block(declaration.blocks, declaration.prob)
    elif isinstance(declaration, CustomDesign):
        return permutations_to_condition_pr_mat(declaration.permutation_matrix)
    else:
        raise TypeError(
            "declaration must be one of SimpleDesign, CompleteDesign, ClusteredDesign, "
            f"BlockedDesign, BlockedClusteredDesign or CustomDesign; got {type(declaration).__name__}.",
        )
    LOGGER.debug("Built %s condition probability matrix for %d units", declaration.ra_type, P.shape[0] // 2)
    return ConditionPrMatrix(P)
