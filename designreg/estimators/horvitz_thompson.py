"""Horvitz-Thompson estimator of the average treatment effect.

The design enters only through the condition probability matrix, which may be
passed directly, derived from a randomization declaration, or assumed from the
observed data. Two variance estimators are available:

* ``youngs`` (default): the conservative Aronow-Middleton estimator. Pairs of
  observed cells with positive joint probability contribute the usual
  Horvitz-Thompson covariance term; pairs that can never be observed together
  (exact zero joint probability) are bounded with Young's inequality.
* ``constant``: exact under a constant treatment effect. Missing potential
  outcomes are imputed as ``y +/- tau_hat`` and plugged into
  ``a' (P - p p') a`` with ``a = (-y0 / p0, y1 / p1)``.

With ``clusters`` the estimator works on cluster totals (the collapsed
variant); with ``blocks`` it combines per-block estimates with weights
``N_b / N``.
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from designreg.core import inference as inf
from designreg.design.condition_pr import (
    ConditionPrMatrix,
    as_condition_pr_matrix,
    declaration_to_condition_pr_mat,
)
from designreg.design.declaration import (
    BlockedClusteredDesign,
    BlockedDesign,
    ClusteredDesign,
    CompleteDesign,
    SimpleDesign,
)
from designreg.exceptions import (
    DesignMismatchError,
    InputShapeError,
    UnsupportedVarianceTypeError,
)

from .base import EstimationResult, as_1d, as_labels, coef_table

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from designreg.design.declaration import RandomizationDeclaration

LOGGER = logging.getLogger(__name__)

__all__ = ["HT_SE_TYPES", "horvitz_thompson", "ht_estimate_and_variance"]

HT_SE_TYPES: tuple[str, ...] = ("youngs", "constant", "none")


def _treatment_masks(
    z: Any, condition1: Any, condition2: Any,
) -> tuple[NDArray[np.bool_], NDArray[np.bool_]]:
    z_arr = np.asarray(z)
    if z_arr.ndim != 1:
        raise InputShapeError("z must be 1D.")
    if pd.isna(z_arr).any():
        raise InputShapeError("z must not contain missing values.")
    if condition1 == condition2:
        raise InputShapeError("condition1 and condition2 must differ.")
    treated = np.asarray(z_arr == condition2, dtype=bool)
    control = np.asarray(z_arr == condition1, dtype=bool)
    return treated, control


def _group_probs(
    treated: NDArray[np.bool_], groups: NDArray[np.object_],
) -> NDArray[np.float64]:
    """Per-unit share treated within each group."""
    codes, _ = pd.factorize(groups, sort=True)
    share = np.bincount(codes, weights=treated.astype(np.float64)) / np.bincount(codes)
    return share[codes]


def _cluster_share_by_block(
    treated: NDArray[np.bool_],
    blocks: NDArray[np.object_],
    clusters: NDArray[np.object_],
) -> NDArray[np.float64]:
    """Per-unit share of treated clusters within each block."""
    frame = pd.DataFrame({"b": blocks, "c": clusters, "t": treated})
    per_cluster = frame.drop_duplicates("c")
    share = per_cluster.groupby("b")["t"].mean()
    return frame["b"].map(share).to_numpy(dtype=np.float64)


def _assumed_declaration(
    treated: NDArray[np.bool_],
    *,
    condition_prs: Any,
    clusters: NDArray[np.object_] | None,
    blocks: NDArray[np.object_] | None,
) -> RandomizationDeclaration:
    """Declaration used when neither a matrix nor a declaration is supplied."""
    n = treated.shape[0]
    if condition_prs is not None:
        p = np.asarray(condition_prs, dtype=np.float64)
        prob = np.full(n, float(p), dtype=np.float64) if p.ndim == 0 else as_1d(p, "condition_prs")
        if prob.shape[0] != n:
            raise InputShapeError(
                f"Length mismatch: condition_prs has {prob.shape[0]}, expected {n}.",
            )
        if blocks is not None and clusters is not None:
            LOGGER.info(
                "Assuming complete cluster random assignment within blocks from condition_prs.",
            )
            return BlockedClusteredDesign(blocks=blocks, clusters=clusters, prob=prob)
        if blocks is not None:
            LOGGER.info("Assuming complete random assignment within blocks from condition_prs.")
            return BlockedDesign(blocks=blocks, prob=prob)
        if clusters is not None:
            LOGGER.info("Assuming simple cluster random assignment from condition_prs.")
            return ClusteredDesign(clusters=clusters, prob=prob, simple=True)
        LOGGER.info("Assuming simple random assignment from condition_prs.")
        return SimpleDesign(prob=prob)

    if blocks is not None and clusters is not None:
        LOGGER.info(
            "No design supplied; assuming complete cluster random assignment within "
            "blocks with the observed share of treated clusters.",
        )
        return BlockedClusteredDesign(
            blocks=blocks,
            clusters=clusters,
            prob=_cluster_share_by_block(treated, blocks, clusters),
        )
    if blocks is not None:
        LOGGER.info(
            "No design supplied; assuming complete random assignment within blocks "
            "with the observed share treated.",
        )
        return BlockedDesign(blocks=blocks, prob=_group_probs(treated, blocks))
    if clusters is not None:
        frame = pd.DataFrame({"c": clusters, "t": treated}).drop_duplicates("c")
        share = float(frame["t"].mean())
        LOGGER.info(
            "No design supplied; assuming complete cluster random assignment with "
            "prob = %.4g (observed share of treated clusters).",
            share,
        )
        return ClusteredDesign(clusters=clusters, prob=np.full(n, share), simple=False)
    share = float(np.mean(treated))
    LOGGER.info(
        "No design supplied; assuming complete random assignment with prob = %.4g "
        "(observed share treated).",
        share,
    )
    return CompleteDesign(prob=np.full(n, share))


def _collapse_clusters(
    y: NDArray[np.float64],
    treated: NDArray[np.bool_],
    clusters: NDArray[np.object_],
    blocks: NDArray[np.object_] | None,
) -> tuple[
    NDArray[np.float64],
    NDArray[np.bool_],
    NDArray[np.int64],
    NDArray[np.float64],
    NDArray[np.object_] | None,
]:
    """Cluster totals, cluster treatment, representative units and sizes."""
    codes, _ = pd.factorize(clusters, sort=True)
    n_clust = int(codes.max()) + 1
    n_treated = np.bincount(codes, weights=treated.astype(np.float64), minlength=n_clust)
    sizes = np.bincount(codes, minlength=n_clust).astype(np.float64)
    if np.any((n_treated > 0) & (n_treated < sizes)):
        raise DesignMismatchError(
            "Clusters must be nested within treatment: some clusters contain "
            "both treated and control units.",
        )
    totals = np.bincount(codes, weights=y, minlength=n_clust)
    rep = np.array([np.flatnonzero(codes == c)[0] for c in range(n_clust)], dtype=np.int64)
    block_c = None
    if blocks is not None:
        block_codes, _ = pd.factorize(blocks, sort=True)
        first = block_codes[rep]
        if np.any(block_codes != first[codes]):
            raise DesignMismatchError("Clusters must be nested within blocks.")
        block_c = blocks[rep]
    return totals, n_treated > 0, rep, sizes, block_c


def _youngs_variance(
    y: NDArray[np.float64],
    treated: NDArray[np.bool_],
    P: NDArray[np.float64],
) -> float:
    m = y.shape[0]
    obs = np.where(treated, m + np.arange(m), np.arange(m))
    P_obs = P[np.ix_(obs, obs)]
    pi = np.diag(P_obs)
    a = np.where(treated, y, -y) / pi
    positive = P_obs > 0.0
    with np.errstate(divide="ignore", invalid="ignore"):
        coef = np.where(positive, (P_obs - np.outer(pi, pi)) / P_obs, 0.0)
    pair_terms = float(a @ coef @ a)
    # Young's inequality bound for cells never observed together with k
    n_zero = np.sum(P[obs, :] == 0.0, axis=1)
    return pair_terms + float(np.sum(n_zero * y * y / pi))


def _constant_effects_variance(
    y: NDArray[np.float64],
    treated: NDArray[np.bool_],
    P: NDArray[np.float64],
    shift: NDArray[np.float64],
) -> float:
    m = y.shape[0]
    y0 = np.where(treated, y - shift, y)
    y1 = np.where(treated, y, y + shift)
    p = np.diag(P)
    num = np.concatenate([-y0, y1])
    a = np.divide(num, p, out=np.zeros(2 * m, dtype=np.float64), where=p > 0.0)
    return float(a @ (P - np.outer(p, p)) @ a)


def ht_estimate_and_variance(
    y: NDArray[np.float64],
    treated: NDArray[np.bool_],
    condition_pr_mat: ConditionPrMatrix | NDArray[np.float64],
    *,
    n_units: float | None = None,
    sizes: NDArray[np.float64] | None = None,
    se_type: str = "youngs",
) -> tuple[float, float]:
    """Horvitz-Thompson estimate and variance for a single stratum.

    Parameters
    ----------
    y : ndarray, shape (m,)
        Outcomes (or cluster totals for the collapsed variant).
    treated : ndarray of bool, shape (m,)
        Observed condition of each unit.
    condition_pr_mat : ConditionPrMatrix or ndarray, shape (2m, 2m)
    n_units : float, optional
        Number of units the effect is averaged over; defaults to ``m``.
    sizes : ndarray, optional
        Units per entry of ``y`` (cluster sizes); scales the constant-effects
        imputation.
    se_type : {'youngs', 'constant', 'none'}

    Returns
    -------
    (estimate, variance)
        ``variance`` is NaN for ``se_type='none'``.

    """
    P = np.asarray(condition_pr_mat, dtype=np.float64)
    m = y.shape[0]
    if P.shape != (2 * m, 2 * m):
        raise InputShapeError(f"condition_pr_mat has shape {P.shape}; expected {(2 * m, 2 * m)}.")
    N = float(m if n_units is None else n_units)
    p0 = np.diag(P)[:m]
    p1 = np.diag(P)[m:]
    pi_obs = np.where(treated, p1, p0)
    if np.any(pi_obs <= 0.0):
        bad = int(np.sum(pi_obs <= 0.0))
        raise DesignMismatchError(
            f"{bad} unit(s) were observed in a condition they have zero probability "
            "of being assigned to under the design.",
        )
    total1 = float(np.sum(y[treated] / p1[treated]))
    total0 = float(np.sum(y[~treated] / p0[~treated]))
    estimate = (total1 - total0) / N
    if se_type == "none":
        return estimate, float("nan")
    if se_type == "youngs":
        total = _youngs_variance(y, treated, P)
    else:
        shift = estimate * (np.ones(m) if sizes is None else sizes)
        total = _constant_effects_variance(y, treated, P, shift)
    return estimate, total / (N * N)


def horvitz_thompson(  # noqa: PLR0913, PLR0912, C901
    y: Any,
    z: Any,
    *,
    condition_pr_mat: ConditionPrMatrix | NDArray[np.float64] | pd.DataFrame | None = None,
    declaration: RandomizationDeclaration | None = None,
    condition_prs: Any = None,
    clusters: Any = None,
    blocks: Any = None,
    se_type: str = "youngs",
    alpha: float = 0.05,
    condition1: Any = 0,
    condition2: Any = 1,
) -> EstimationResult:
    """Horvitz-Thompson estimate of the difference ``condition2 - condition1``.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcomes.
    z : array-like, shape (n,)
        Treatment labels; units in neither condition are dropped.
    condition_pr_mat : array-like, shape (2n, 2n), optional
        Condition probability matrix for all ``n`` units.
    declaration : RandomizationDeclaration, optional
        Design from which the matrix is built (ignored if a matrix is given).
    condition_prs : float or array-like, optional
        Probability of ``condition2``; implies a simple design (or complete
        within blocks) when no matrix or declaration is given.
    clusters : array-like, optional
        Cluster labels; the estimator is computed on cluster totals.
    blocks : array-like, optional
        Block labels; per-block estimates are combined with weights ``N_b/N``.
    se_type : {'youngs', 'constant', 'none'}, default 'youngs'
    alpha : float, default 0.05
    condition1, condition2 : labels, default 0 and 1
        Control and treatment labels in ``z``.

    Returns
    -------
    EstimationResult
        One row; ``df`` is NaN and intervals use the normal distribution.

    """
    se_kind = str(se_type).strip().lower()
    if se_kind not in HT_SE_TYPES:
        raise UnsupportedVarianceTypeError(
            f"se_type must be one of {HT_SE_TYPES} for horvitz_thompson; got {se_type!r}.",
        )
    y_arr = as_1d(y, "y")
    n_all = y_arr.shape[0]
    treated_all, control_all = _treatment_masks(z, condition1, condition2)
    if treated_all.shape[0] != n_all:
        raise InputShapeError(f"Length mismatch: z has {treated_all.shape[0]}, expected {n_all}.")
    cl_all = as_labels(clusters, "clusters") if clusters is not None else None
    bl_all = as_labels(blocks, "blocks") if blocks is not None else None
    for arr, nm in ((cl_all, "clusters"), (bl_all, "blocks")):
        if arr is not None and arr.shape[0] != n_all:
            raise InputShapeError(f"Length mismatch: {nm} has {arr.shape[0]}, expected {n_all}.")

    keep = treated_all | control_all
    if not np.all(keep):
        LOGGER.info(
            "Dropping %d unit(s) in neither condition %r nor %r.",
            int(np.sum(~keep)),
            condition1,
            condition2,
        )
    units = np.flatnonzero(keep)
    y_k = y_arr[units]
    treated = treated_all[units]
    cl = cl_all[units] if cl_all is not None else None
    bl = bl_all[units] if bl_all is not None else None
    if not np.any(treated) or np.all(treated):
        raise DesignMismatchError(
            f"Both conditions {condition1!r} and {condition2!r} must be observed.",
        )

    if condition_pr_mat is not None:
        cpm = as_condition_pr_matrix(condition_pr_mat, n_all).subset(units)
        ra_type = "user"
    elif declaration is not None:
        full = declaration_to_condition_pr_mat(declaration)
        cpm = as_condition_pr_matrix(full, n_all).subset(units)
        ra_type = declaration.ra_type
    else:
        assumed = _assumed_declaration(
            treated, condition_prs=condition_prs, clusters=cl, blocks=bl,
        )
        cpm = declaration_to_condition_pr_mat(assumed)
        ra_type = assumed.ra_type

    if cl is not None:
        y_u, treated_u, rep, sizes, bl_u = _collapse_clusters(y_k, treated, cl, bl)
        P_u = cpm.subset(rep)
    else:
        y_u, treated_u, sizes, bl_u = y_k, treated, np.ones(y_k.shape[0]), bl
        P_u = cpm

    n = float(y_k.shape[0])
    if bl_u is None:
        estimate, variance = ht_estimate_and_variance(
            y_u, treated_u, P_u, n_units=n, sizes=sizes, se_type=se_kind,
        )
        n_blocks = None
    else:
        codes, levels = pd.factorize(bl_u, sort=True)
        estimate = 0.0
        variance = 0.0
        for b in range(len(levels)):
            idx = np.flatnonzero(codes == b)
            n_b = float(np.sum(sizes[idx]))
            est_b, var_b = ht_estimate_and_variance(
                y_u[idx],
                treated_u[idx],
                P_u.subset(idx),
                n_units=n_b,
                sizes=sizes[idx],
                se_type=se_kind,
            )
            estimate += (n_b / n) * est_b
            variance += (n_b / n) ** 2 * var_b
        n_blocks = len(levels)

    if se_kind == "none":
        se = float("nan")
    elif variance < 0.0:
        warnings.warn(
            "Estimated Horvitz-Thompson variance is negative; standard error set to NaN.",
            RuntimeWarning,
            stacklevel=2,
        )
        se = float("nan")
    else:
        se = float(np.sqrt(variance))

    lo, hi, p = inf.normal_inference(estimate, se, alpha)
    table = coef_table(
        ["z"],
        np.array([estimate]),
        np.array([se]),
        np.array([np.nan]),
        {"ci_lower": lo, "ci_upper": hi, "p_value": p},
    )
    model_info: dict[str, Any] = {
        "Estimator": "horvitz_thompson",
        "se_type": se_kind,
        "N": int(n),
        "design": ra_type,
        "condition1": condition1,
        "condition2": condition2,
        "clustered": cl is not None,
        "blocked": bl is not None,
    }
    if cl is not None:
        model_info["n_clusters"] = int(y_u.shape[0])
    if n_blocks is not None:
        model_info["n_blocks"] = n_blocks
    return EstimationResult(
        table=table,
        n_obs=int(n),
        vcov=None,
        alpha=alpha,
        model_info=model_info,
        extra={"variance": variance},
    )
