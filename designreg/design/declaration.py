"""Randomization declarations.

A declaration describes how treatment was (or will be) assigned. Each design
is its own frozen dataclass so the probability-matrix builder can dispatch on
the type rather than on free-form strings:

* :class:`SimpleDesign` - independent Bernoulli draw per unit.
* :class:`CompleteDesign` - a fixed number of treated units.
* :class:`ClusteredDesign` - clusters assigned as a whole, simple or complete.
* :class:`BlockedDesign` - complete assignment within independent blocks.
* :class:`BlockedClusteredDesign` - complete cluster assignment within blocks.
* :class:`CustomDesign` - an explicit matrix of admissible assignments.

:func:`declare_ra` builds the right variant from keyword arguments.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Union

import numpy as np
import pandas as pd

from designreg.exceptions import InputShapeError, UnsupportedDesignError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "BlockedClusteredDesign",
    "BlockedDesign",
    "ClusteredDesign",
    "CompleteDesign",
    "CustomDesign",
    "RandomizationDeclaration",
    "SimpleDesign",
    "declare_ra",
]


def _as_prob_vector(prob: Any, n: int, name: str = "prob") -> NDArray[np.float64]:
    p = np.asarray(prob, dtype=np.float64)
    if p.ndim == 0:
        p = np.full(n, float(p), dtype=np.float64)
    if p.ndim != 1 or p.shape[0] != n:
        raise InputShapeError(f"{name} must be a scalar or have length {n}.")
    if not np.all(np.isfinite(p)) or np.any((p < 0.0) | (p > 1.0)):
        raise InputShapeError(f"{name} must lie in [0, 1].")
    return p


def _as_labels(x: Any, name: str, n: int | None = None) -> NDArray[np.object_]:
    a = np.asarray(x, dtype=object)
    if a.ndim != 1:
        raise InputShapeError(f"{name} must be 1D.")
    if n is not None and a.shape[0] != n:
        raise InputShapeError(f"{name} has {a.shape[0]} entries; expected {n}.")
    if pd.isna(a).any():
        raise InputShapeError(f"{name} must not contain missing values.")
    return a


class _Declaration:
    """Shared accessors for the design variants."""

    ra_type: ClassVar[str]
    prob: NDArray[np.float64]

    @property
    def n_units(self) -> int:
        return int(self.prob.shape[0])

    @property
    def probabilities_matrix(self) -> NDArray[np.float64]:
        """(n x 2) matrix of marginal probabilities for conditions 0 and 1."""
        return np.column_stack([1.0 - self.prob, self.prob])


@dataclass(frozen=True, eq=False)
class SimpleDesign(_Declaration):
    """Independent Bernoulli assignment with unit-specific probabilities."""

    prob: NDArray[np.float64]
    ra_type: ClassVar[str] = "simple"

    def __post_init__(self) -> None:
        p = np.asarray(self.prob, dtype=np.float64).reshape(-1)
        object.__setattr__(self, "prob", _as_prob_vector(p, p.shape[0]))


@dataclass(frozen=True, eq=False)
class CompleteDesign(_Declaration):
    """Complete random assignment of ``prob * n`` units (possibly fractional)."""

    prob: NDArray[np.float64]
    ra_type: ClassVar[str] = "complete"

    def __post_init__(self) -> None:
        p = np.asarray(self.prob, dtype=np.float64).reshape(-1)
        object.__setattr__(self, "prob", _as_prob_vector(p, p.shape[0]))


@dataclass(frozen=True, eq=False)
class ClusteredDesign(_Declaration):
    """Cluster-level assignment; ``prob`` is given per unit."""

    clusters: NDArray[np.object_]
    prob: NDArray[np.float64]
    simple: bool = False
    ra_type: ClassVar[str] = "clustered"

    def __post_init__(self) -> None:
        cl = _as_labels(self.clusters, "clusters")
        object.__setattr__(self, "clusters", cl)
        object.__setattr__(self, "prob", _as_prob_vector(self.prob, cl.shape[0]))


@dataclass(frozen=True, eq=False)
class BlockedDesign(_Declaration):
    """Complete assignment within each block; blocks are independent."""

    blocks: NDArray[np.object_]
    prob: NDArray[np.float64]
    ra_type: ClassVar[str] = "blocked"

    def __post_init__(self) -> None:
        bl = _as_labels(self.blocks, "blocks")
        object.__setattr__(self, "blocks", bl)
        object.__setattr__(self, "prob", _as_prob_vector(self.prob, bl.shape[0]))


@dataclass(frozen=True, eq=False)
class BlockedClusteredDesign(_Declaration):
    """Complete cluster assignment within each block."""

    blocks: NDArray[np.object_]
    clusters: NDArray[np.object_]
    prob: NDArray[np.float64]
    ra_type: ClassVar[str] = "blocked_and_clustered"

    def __post_init__(self) -> None:
        bl = _as_labels(self.blocks, "blocks")
        cl = _as_labels(self.clusters, "clusters", bl.shape[0])
        object.__setattr__(self, "blocks", bl)
        object.__setattr__(self, "clusters", cl)
        object.__setattr__(self, "prob", _as_prob_vector(self.prob, bl.shape[0]))


@dataclass(frozen=True, eq=False)
class CustomDesign(_Declaration):
    """Design given by a (units x realizations) 0/1 permutation matrix."""

    permutation_matrix: NDArray[np.float64]
    ra_type: ClassVar[str] = "custom"

    def __post_init__(self) -> None:
        perms = np.asarray(self.permutation_matrix, dtype=np.float64)
        if perms.ndim != 2 or perms.shape[1] == 0:
            raise InputShapeError("permutation_matrix must be 2D (units x realizations).")
        if not np.all((perms == 0.0) | (perms == 1.0)):
            raise InputShapeError("Permutations matrix must only have 0s and 1s in it.")
        object.__setattr__(self, "permutation_matrix", perms)

    @property
    def prob(self) -> NDArray[np.float64]:  # type: ignore[override]
        return self.permutation_matrix.mean(axis=1)


RandomizationDeclaration = Union[
    SimpleDesign,
    CompleteDesign,
    ClusteredDesign,
    BlockedDesign,
    BlockedClusteredDesign,
    CustomDesign,
]


def _block_probs(
    blocks: NDArray[np.object_],
    prob: Any,
    block_m: Mapping[Any, int] | Sequence[int] | None,
) -> NDArray[np.float64]:
    """Per-unit probabilities from a scalar/vector ``prob`` or per-block counts."""
    n = blocks.shape[0]
    if block_m is None:
        return _as_prob_vector(0.5 if prob is None else prob, n)
    codes, levels = pd.factorize(blocks, sort=True)
    sizes = np.bincount(codes, minlength=len(levels))
    if isinstance(block_m, Mapping):
        try:
            m = np.array([block_m[lev] for lev in levels], dtype=np.float64)
        except KeyError as exc:
            raise InputShapeError(f"block_m is missing block {exc.args[0]!r}.") from exc
    else:
        m = np.asarray(block_m, dtype=np.float64)
        if m.shape != (len(levels),):
            raise InputShapeError(
                f"block_m must have one entry per block ({len(levels)}, sorted order).",
            )
    if np.any(m < 0) or np.any(m > sizes):
        raise InputShapeError("block_m entries must lie between 0 and the block size.")
    return (m / sizes)[codes]


def declare_ra(  # noqa: PLR0913
    N: int | None = None,
    *,
    prob: float | Sequence[float] | None = None,
    m: int | None = None,
    blocks: Sequence | None = None,
    clusters: Sequence | None = None,
    block_m: Mapping[Any, int] | Sequence[int] | None = None,
    simple: bool = False,
    permutation_matrix: Any = None,
) -> RandomizationDeclaration:
    """Build a declaration from keyword arguments.

    Parameters
    ----------
    N : int, optional
        Number of units; inferred from ``blocks``/``clusters``/``prob`` when
        omitted.
    prob : float or sequence of float, optional
        Probability of treatment (scalar or per unit). Defaults to 0.5.
    m : int, optional
        Number of treated units (or clusters, for clustered designs).
    blocks, clusters : sequence, optional
        Block and cluster labels aligned with units.
    block_m : mapping or sequence, optional
        Number of treated units (clusters) per block; a sequence follows the
        sorted block labels.
    simple : bool, default False
        Independent (Bernoulli) assignment instead of complete assignment.
    permutation_matrix : array-like, optional
        Units x realizations 0/1 matrix; yields a :class:`CustomDesign`.

    """
    if permutation_matrix is not None:
        if blocks is not None or clusters is not None:
            raise UnsupportedDesignError(
                "A permutation matrix cannot be combined with blocks or clusters; "
                "encode the full design in the permutation matrix instead.",
            )
        return CustomDesign(permutation_matrix=permutation_matrix)

    if blocks is not None:
        if simple:
            raise UnsupportedDesignError(
                "Blocked designs with simple (Bernoulli) assignment are not supported; "
                "use a SimpleDesign with unit-level probabilities instead.",
            )
        bl = _as_labels(blocks, "blocks", N)
        if clusters is not None:
            cl = _as_labels(clusters, "clusters", bl.shape[0])
            if block_m is not None:
                # block_m counts clusters: spread over the clusters of each block
                cl_first = pd.DataFrame({"b": bl, "c": cl}).drop_duplicates("c")
                p_cluster = _block_probs(cl_first["b"].to_numpy(dtype=object), None, block_m)
                lookup = dict(zip(cl_first["c"].tolist(), p_cluster.tolist()))
                p = np.array([lookup[c] for c in cl.tolist()], dtype=np.float64)
            else:
                p = _as_prob_vector(0.5 if prob is None else prob, bl.shape[0])
            return BlockedClusteredDesign(blocks=bl, clusters=cl, prob=p)
        return BlockedDesign(blocks=bl, prob=_block_probs(bl, prob, block_m))

    if clusters is not None:
        cl = _as_labels(clusters, "clusters", N)
        if m is not None:
            n_clust = len(pd.unique(cl))
            if not (0 <= m <= n_clust):
                raise InputShapeError("m must lie between 0 and the number of clusters.")
            prob = m / n_clust
        return ClusteredDesign(
            clusters=cl,
            prob=_as_prob_vector(0.5 if prob is None else prob, cl.shape[0]),
            simple=simple,
        )

    if N is None:
        p_arr = np.asarray(prob, dtype=np.float64) if prob is not None else None
        if p_arr is None or p_arr.ndim == 0:
            raise InputShapeError("N is required unless prob is given per unit.")
        N = int(p_arr.shape[0])
    if m is not None:
        if simple:
            raise InputShapeError("m (number treated) is only valid for complete assignment.")
        if not (0 <= m <= N):
            raise InputShapeError("m must lie between 0 and N.")
        prob = m / N
    p = _as_prob_vector(0.5 if prob is None else prob, int(N))
    if simple:
        return SimpleDesign(prob=p)
    return CompleteDesign(prob=p)
