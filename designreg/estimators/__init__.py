"""Estimator exports with lazy loading.

Public estimator functions, classes and the shared result container. Uses
lazy imports so importing the subpackage stays cheap.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "BaseEstimator",
    "DimDesign",
    "EstimationResult",
    "FitConfig",
    "LMRobust",
    "difference_in_means",
    "horvitz_thompson",
    "lm_robust_fit",
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
}


def __getattr__(name: str) -> Any:
    """Lazily import estimators and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'designreg.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
