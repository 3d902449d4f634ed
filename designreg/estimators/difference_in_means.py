"""Design-based difference-in-means estimator.

The estimate is always a (weighted) difference of condition means; the
variance and degrees of freedom depend on the design:

==========================  ===========================================  ==============
design                      variance                                     df
==========================  ===========================================  ==============
standard                    ``s1^2/n1 + s0^2/n0``                        Welch
weighted                    HC2 of ``y ~ 1 + z``                         ``N - 2``
clustered                   CR2 of ``y ~ 1 + z``                         Bell-McCaffrey
blocked                     ``sum (N_b/N)^2 v_b``                        ``N - 2B``
blocked + clustered         ``sum (N_b/N)^2 v_b`` (per-block CR2)        ``S - 2B``
matched pairs (clustered)   ``J/((J-1)N^2) sum (N_j d_j - N d/J)^2``     ``J - 1``
==========================  ===========================================  ==============
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from designreg.core import inference as inf
from designreg.exceptions import (
    DesignMismatchError,
    InputShapeError,
    UnsupportedDesignError,
)

from .base import EstimationResult, as_1d, as_labels, coef_table
from .lm_robust import lm_robust_fit

if TYPE_CHECKING:
    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["DimDesign", "difference_in_means"]


class DimDesign(str, Enum):
    """Which variance formula :func:`difference_in_means` used."""

    STANDARD = "standard"
    WEIGHTED = "weighted"
    CLUSTERED = "clustered"
    BLOCKED = "blocked"
    BLOCKED_CLUSTERED = "blocked_clustered"
    MATCHED_PAIR = "matched_pair"
    MATCHED_PAIR_CLUSTERED = "matched_pair_clustered"


def _check_clusters_nested(treated: NDArray[np.bool_], clusters: NDArray[np.object_]) -> None:
    frame = pd.DataFrame({"c": clusters, "t": treated})
    if np.any(frame.groupby("c", sort=False)["t"].nunique() > 1):
        raise DesignMismatchError(
            "Treatment must be constant within clusters; some clusters contain "
            "units in both conditions.",
        )


def _dim_unblocked(
    y: NDArray[np.float64],
    treated: NDArray[np.bool_],
    clusters: NDArray[np.object_] | None,
    weights: NDArray[np.float64] | None,
) -> tuple[float, float, float]:
    """Estimate, variance and df for a single unblocked stratum."""
    n1 = int(np.sum(treated))
    n0 = int(np.sum(~treated))
    if clusters is not None or weights is not None:
        if n1 == 0 or n0 == 0:
            raise DesignMismatchError("Each condition needs at least one unit.")
        X = np.column_stack([np.ones(y.shape[0]), treated.astype(np.float64)])
        res = lm_robust_fit(
            y,
            X,
            weights=weights,
            clusters=clusters,
            se_type="CR2" if clusters is not None else "HC2",
            ci=True,
            return_vcov=False,
            coefficient_name="z",
            var_names=["(Intercept)", "z"],
        )
        row = res.table.loc["z"]
        return float(row["estimate"]), float(row["std_error"]) ** 2, float(row["df"])
    if n1 < 2 or n0 < 2:
        raise DesignMismatchError(
            "Each condition needs at least two units to estimate the variance "
            f"(got {n1} treated, {n0} control).",
        )
    y1 = y[treated]
    y0 = y[~treated]
    var1 = float(np.var(y1, ddof=1))
    var0 = float(np.var(y0, ddof=1))
    diff = float(np.mean(y1) - np.mean(y0))
    return diff, var1 / n1 + var0 / n0, inf.welch_dof(var1, n1, var0, n0)


def _matched_pairs(
    y: NDArray[np.float64],
    treated: NDArray[np.bool_],
    codes: NDArray[np.int64],
    n_blocks: int,
) -> tuple[float, float, float]:
    if n_blocks < 2:
        raise DesignMismatchError("A matched-pair design needs at least two pairs.")
    n_j = np.bincount(codes, minlength=n_blocks).astype(np.float64)
    s1 = np.bincount(codes, weights=np.where(treated, y, 0.0), minlength=n_blocks)
    c1 = np.bincount(codes, weights=treated.astype(np.float64), minlength=n_blocks)
    s0 = np.bincount(codes, weights=np.where(treated, 0.0, y), minlength=n_blocks)
    c0 = n_j - c1
    d_j = s1 / c1 - s0 / c0
    N = float(np.sum(n_j))
    J = float(n_blocks)
    diff = float(np.sum(n_j / N * d_j))
    var = J / ((J - 1.0) * N * N) * float(np.sum((n_j * d_j - N * diff / J) ** 2))
    return diff, var, J - 1.0


def difference_in_means(  # noqa: PLR0913, PLR0912, PLR0915, C901
    y: Any,
    z: Any,
    *,
    blocks: Any = None,
    clusters: Any = None,
    weights: Any = None,
    alpha: float = 0.05,
    condition1: Any = 0,
    condition2: Any = 1,
) -> EstimationResult:
    """Difference in means of ``condition2`` minus ``condition1``.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcomes.
    z : array-like, shape (n,)
        Treatment labels; units in neither condition are dropped.
    blocks : array-like, optional
        Block labels. Blocks of exactly two units (or two clusters) form a
        matched-pair design; mixing pairs with larger blocks is an error.
    clusters : array-like, optional
        Cluster labels; treatment must be constant within clusters.
    weights : array-like, optional
        Non-negative observation weights (not available for matched pairs).
    alpha : float, default 0.05
    condition1, condition2 : labels, default 0 and 1

    Returns
    -------
    EstimationResult
        One row; ``model_info['design']`` holds the :class:`DimDesign` used.

    """
    y_arr = as_1d(y, "y")
    n_all = y_arr.shape[0]
    z_arr = np.asarray(z)
    if z_arr.ndim != 1 or z_arr.shape[0] != n_all:
        raise InputShapeError(f"z must be 1D with {n_all} entries.")
    if pd.isna(z_arr).any():
        raise InputShapeError("z must not contain missing values.")
    if condition1 == condition2:
        raise InputShapeError("condition1 and condition2 must differ.")
    treated_all = np.asarray(z_arr == condition2, dtype=bool)
    keep = treated_all | np.asarray(z_arr == condition1, dtype=bool)
    if not np.all(keep):
        LOGGER.info(
            "Dropping %d unit(s) in neither condition %r nor %r.",
            int(np.sum(~keep)),
            condition1,
            condition2,
        )

    def _aligned(values: Any, name: str, as_float: bool = False) -> Any:
        if values is None:
            return None
        arr = as_1d(values, name) if as_float else as_labels(values, name)
        if arr.shape[0] != n_all:
            raise InputShapeError(f"Length mismatch: {name} has {arr.shape[0]}, expected {n_all}.")
        return arr[keep]

    y_k = y_arr[keep]
    treated = treated_all[keep]
    bl = _aligned(blocks, "blocks")
    cl = _aligned(clusters, "clusters")
    w = _aligned(weights, "weights", as_float=True)
    if w is not None and np.any(w < 0.0):
        raise InputShapeError("weights must not be negative.")
    if cl is not None:
        _check_clusters_nested(treated, cl)

    n_blocks: int | None = None
    if bl is None:
        if cl is not None:
            design = DimDesign.CLUSTERED
        elif w is not None:
            design = DimDesign.WEIGHTED
        else:
            design = DimDesign.STANDARD
        diff, var, df = _dim_unblocked(y_k, treated, cl, w)
    else:
        codes, levels = pd.factorize(bl, sort=True)
        n_blocks = len(levels)
        has_t = np.bincount(codes, weights=treated.astype(np.float64), minlength=n_blocks)
        sizes = np.bincount(codes, minlength=n_blocks)
        if np.any(has_t == 0) or np.any(has_t == sizes):
            raise DesignMismatchError(
                "All blocks must contain units in both conditions; some blocks "
                "have only treated or only control units.",
            )
        if cl is not None:
            per_block = pd.DataFrame({"b": codes, "c": cl})
            if np.any(per_block.groupby("c", sort=False)["b"].nunique() > 1):
                raise DesignMismatchError("Clusters must be nested within blocks.")
            units_per_block = per_block.groupby("b")["c"].nunique().to_numpy()
        else:
            units_per_block = sizes
        is_pair = units_per_block == 2
        if np.any(is_pair) and not np.all(is_pair):
            raise DesignMismatchError(
                "Blocks of size two (matched pairs) cannot be mixed with larger "
                "blocks; merge the pairs or analyse them separately.",
            )
        if np.all(is_pair):
            if w is not None:
                raise UnsupportedDesignError(
                    "Weights are not supported for matched-pair designs.",
                )
            design = DimDesign.MATCHED_PAIR_CLUSTERED if cl is not None else DimDesign.MATCHED_PAIR
            diff, var, df = _matched_pairs(y_k, treated, codes.astype(np.int64), n_blocks)
        else:
            design = DimDesign.BLOCKED_CLUSTERED if cl is not None else DimDesign.BLOCKED
            block_size = (
                np.bincount(codes, weights=w, minlength=n_blocks)
                if w is not None
                else sizes.astype(np.float64)
            )
            total = float(np.sum(block_size))
            diff = 0.0
            var = 0.0
            for b in range(n_blocks):
                idx = np.flatnonzero(codes == b)
                d_b, v_b, _ = _dim_unblocked(
                    y_k[idx],
                    treated[idx],
                    cl[idx] if cl is not None else None,
                    w[idx] if w is not None else None,
                )
                share = float(block_size[b]) / total
                diff += share * d_b
                var += share * share * v_b
            n_units = len(pd.unique(cl)) if cl is not None else int(y_k.shape[0])
            df = float(n_units - 2 * n_blocks)

    se = float(np.sqrt(var)) if np.isfinite(var) and var >= 0.0 else float("nan")
    lo, hi, p = inf.t_inference(diff, se, df, alpha)
    table = coef_table(
        ["z"],
        np.array([diff]),
        np.array([se]),
        np.array([df]),
        {"ci_lower": lo, "ci_upper": hi, "p_value": p},
    )
    model_info: dict[str, Any] = {
        "Estimator": "difference_in_means",
        "design": design,
        "N": int(y_k.shape[0]),
        "condition1": condition1,
        "condition2": condition2,
        "weighted": w is not None,
    }
    if n_blocks is not None:
        model_info["n_blocks"] = n_blocks
    if cl is not None:
        model_info["n_clusters"] = len(pd.unique(cl))
    LOGGER.debug("difference_in_means used the %s design", design.value)
    return EstimationResult(
        table=table,
        n_obs=int(y_k.shape[0]),
        vcov=None,
        alpha=alpha,
        model_info=model_info,
    )
