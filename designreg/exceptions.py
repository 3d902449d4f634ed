"""Exception and warning classes raised by designreg.

All errors derive from :class:`DesignregError` and, where the failure is about
bad arguments, from :class:`ValueError` as well so callers that already catch
``ValueError`` keep working.
"""

from __future__ import annotations

__all__ = [
    "DegenerateClusterError",
    "DesignMismatchError",
    "DesignregError",
    "InputShapeError",
    "RankDeficiencyWarning",
    "UnsupportedDesignError",
    "UnsupportedVarianceTypeError",
]


class DesignregError(Exception):
    """Base class for designreg errors."""


class InputShapeError(DesignregError, ValueError):
    """Inputs have mismatched lengths, invalid entries, or the wrong shape."""


class DegenerateClusterError(InputShapeError):
    """Cluster-robust inference requested with fewer than two clusters."""


class DesignMismatchError(DesignregError, ValueError):
    """The randomization design is inconsistent with the data or itself.

    Raised for example when a complete or clustered design is declared with
    unit-varying treatment probabilities.
    """


class UnsupportedDesignError(DesignMismatchError):
    """A design combination that is declared but not supported."""


class UnsupportedVarianceTypeError(DesignregError, ValueError):
    """``se_type`` is not valid with (or without) clusters."""


class RankDeficiencyWarning(UserWarning):
    """Design matrix is rank deficient; some coefficients are not estimable."""
