"""Base classes, fit configuration and the estimation results container.

This module defines the abstract base estimator, the frozen fit configuration
shared by the regression estimators, the coefficient-table results container
and small input-validation helpers used across estimators.
"""

# designreg/estimators/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from designreg.exceptions import InputShapeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "COEF_COLUMNS",
    "BaseEstimator",
    "EstimationResult",
    "FitConfig",
    "as_1d",
    "as_labels",
    "ci_level_to_alpha",
    "normalize_ci_level",
]

COEF_COLUMNS: tuple[str, ...] = (
    "estimate",
    "std_error",
    "df",
    "ci_lower",
    "ci_upper",
    "p_value",
)


def normalize_ci_level(level: float | None, *, default: float = 0.95) -> float:
    """Normalize confidence level to a probability (0, 1)."""
    if not (0.0 < float(default) < 1.0):
        raise ValueError("default confidence level must lie in (0, 1)")
    if level is None:
        coerced = float(default)
    else:
        coerced = float(level)
        # Accept percentage-style inputs (e.g., 90 for 90%)
        if coerced > 1.0:
            coerced /= 100.0
    if not (0.0 < coerced < 1.0):
        raise ValueError("ci_level must be in (0, 1); supply e.g. 0.95 or 95")
    return coerced


def ci_level_to_alpha(level: float | None, *, default: float = 0.95) -> float:
    """Return the corresponding tail probability ``alpha`` for a confidence level."""
    ci_level = normalize_ci_level(level, default=default)
    return 1.0 - ci_level


def _check_alpha(alpha: float) -> float:
    a = float(alpha)
    if not (0.0 < a < 1.0):
        raise ValueError(f"alpha must lie in (0, 1); got {alpha!r}.")
    return a


# ---------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------


def as_1d(x: Any, name: str) -> NDArray[np.float64]:
    """Coerce to a finite 1D float array."""
    a = np.asarray(x, dtype=np.float64)
    if a.ndim == 2 and a.shape[1] == 1:
        a = a.reshape(-1)
    if a.ndim != 1:
        raise InputShapeError(f"{name} must be 1D.")
    if not np.all(np.isfinite(a)):
        raise InputShapeError(f"{name} must be finite.")
    return a.copy()


def as_labels(x: Any, name: str) -> NDArray[np.object_]:
    """Coerce to a 1D label array without missing values."""
    a = np.asarray(x, dtype=object)
    if a.ndim != 1:
        raise InputShapeError(f"{name} must be 1D.")
    if pd.isna(a).any():
        raise InputShapeError(f"{name} must not contain missing values.")
    return a


# ---------------------------------------------------------------------
# Fit configuration
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class FitConfig:
    """Options shared by the regression-based estimators.

    Notes
    -----
    - ``se_type=None`` picks ``HC2`` without clusters and ``CR2`` with clusters.
    - ``coefficient_name`` restricts the coefficients for which CR2 degrees of
      freedom are computed (the expensive part of CR2); other coefficients
      keep their estimate and standard error but get NaN df/CI/p.
    - ``try_cholesky`` trades rank-deficiency detection for speed; only use
      it with designs known to be of full column rank.

    """

    se_type: str | None = None
    ci: bool = True
    alpha: float = 0.05
    return_vcov: bool = True
    try_cholesky: bool = False
    coefficient_name: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        _check_alpha(self.alpha)
        if self.coefficient_name is not None and not isinstance(self.coefficient_name, tuple):
            names = (
                (self.coefficient_name,)
                if isinstance(self.coefficient_name, str)
                else tuple(self.coefficient_name)
            )
            object.__setattr__(self, "coefficient_name", names)


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass
class EstimationResult:
    """Container for estimation results.

    ``table`` is indexed by coefficient name with the columns in
    :data:`COEF_COLUMNS`. Missing values (rank-deficient coefficients,
    ``se_type='none'``, df not requested) are NaN. ``vcov`` covers the
    estimable coefficients only.
    """

    table: pd.DataFrame
    n_obs: int | None = None
    vcov: pd.DataFrame | None = None
    res_var: float | None = None
    alpha: float = 0.05
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"EstimationResult(k={len(self.table)}, n={self.n_obs}, {head})"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check the coefficient table and vcov are mutually consistent."""
        if not isinstance(self.table, pd.DataFrame):
            raise TypeError("table must be a pandas DataFrame.")
        missing = [c for c in COEF_COLUMNS if c not in self.table.columns]
        if missing:
            raise ValueError(f"table is missing columns {missing}.")
        if not self.table.index.is_unique:
            raise ValueError("coefficient names must be unique.")
        _check_alpha(self.alpha)
        if self.vcov is not None:
            if not isinstance(self.vcov, pd.DataFrame):
                raise TypeError("vcov must be a pandas DataFrame.")
            if not self.vcov.index.equals(self.vcov.columns):
                raise ValueError("vcov rows and columns must carry the same labels.")
            if not set(self.vcov.index).issubset(set(self.table.index)):
                raise ValueError("vcov labels must be coefficient names.")

    @property
    def params(self) -> pd.Series:
        return self.table["estimate"]

    @property
    def se(self) -> pd.Series:
        return self.table["std_error"]

    @property
    def df(self) -> pd.Series:
        return self.table["df"]

    @property
    def p_values(self) -> pd.Series:
        return self.table["p_value"]

    def conf_int(self) -> pd.DataFrame:
        """Return the ``(1 - alpha)`` confidence intervals as a DataFrame."""
        return self.table[["ci_lower", "ci_upper"]].copy()

    def tidy(self) -> pd.DataFrame:
        """Coefficient table with the coefficient names as a column."""
        out = self.table.reset_index()
        return out.rename(columns={out.columns[0]: "term"})


class BaseEstimator(ABC):
    """Abstract base class for designreg estimators."""

    def __init__(self) -> None:
        self._results: EstimationResult | None = None

    @abstractmethod
    def fit(self, *args: Any, **kwargs: Any) -> EstimationResult:
        """Fit the estimator and return an :class:`EstimationResult`."""

    @property
    def results(self) -> EstimationResult:
        if self._results is None:
            raise RuntimeError("Call fit() before accessing results.")
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def se(self) -> pd.Series:
        return self.results.se

    @property
    def n_obs(self) -> int | None:
        return self.results.n_obs


def coef_table(
    names: Sequence[str],
    est: NDArray[np.float64],
    se: NDArray[np.float64],
    df: NDArray[np.float64],
    inference: dict[str, NDArray[np.float64]],
) -> pd.DataFrame:
    """Assemble a coefficient table in the canonical column order."""
    return pd.DataFrame(
        {
            "estimate": np.asarray(est, dtype=np.float64),
            "std_error": np.asarray(se, dtype=np.float64),
            "df": np.asarray(df, dtype=np.float64),
            "ci_lower": inference["ci_lower"],
            "ci_upper": inference["ci_upper"],
            "p_value": inference["p_value"],
        },
        index=pd.Index(list(names), name="term"),
    )
