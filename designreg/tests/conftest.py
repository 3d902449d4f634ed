from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest


def pytest_configure() -> None:
    """Ensure the repository root is on sys.path.

    The suite lives inside the package, so pytest may pick
    `.../designreg` as its rootdir. In that case, importing the top-level
    package `designreg` fails unless the parent directory is on `sys.path`.
    """

    repo_root = Path(__file__).resolve().parents[2]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def four_unit_experiment():
    """Two treated, two control; complete assignment with prob 0.5."""
    z = np.array([1, 0, 1, 0])
    y = np.array([5.0, 3.0, 7.0, 1.0])
    X = np.column_stack([np.ones(4), z.astype(float)])
    return y, z, X
