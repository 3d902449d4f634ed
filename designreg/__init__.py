"""designreg: design-based estimators for randomized experiments.

This package provides least squares with heteroskedasticity- and
cluster-robust (including CR2) standard errors, condition probability
matrices for common randomization designs, and Horvitz-Thompson and
difference-in-means estimators built on them.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "BaseEstimator",
    "ConditionPrMatrix",
    "DimDesign",
    "EstimationResult",
    "FitConfig",
    "LMRobust",
    "declaration_to_condition_pr_mat",
    "declare_ra",
    "difference_in_means",
    "horvitz_thompson",
    "lm_robust_fit",
    "permutations_to_condition_pr_mat",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("designreg.estimators.base", "BaseEstimator"),
    "EstimationResult": ("designreg.estimators.base", "EstimationResult"),
    "FitConfig": ("designreg.estimators.base", "FitConfig"),
    "LMRobust": ("designreg.estimators.lm_robust", "LMRobust"),
    "lm_robust_fit": ("designreg.estimators.lm_robust", "lm_robust_fit"),
    "horvitz_thompson": ("designreg.estimators.horvitz_thompson", "horvitz_thompson"),
    "DimDesign": ("designreg.estimators.difference_in_means", "DimDesign"),
    "difference_in_means": ("designreg.estimators.difference_in_means", "difference_in_means"),
    "ConditionPrMatrix": ("designreg.design.condition_pr", "ConditionPrMatrix"),
    "declaration_to_condition_pr_mat": (
        "designreg.design.condition_pr",
        "declaration_to_condition_pr_mat",
    ),
    "permutations_to_condition_pr_mat": (
        "designreg.design.condition_pr",
        "permutations_to_condition_pr_mat",
    ),
    "declare_ra": ("designreg.design.declaration", "declare_ra"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'designreg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
