# designreg/core/__init__.py
"""Core computational modules for designreg."""
from . import clustered, inference, linalg, robust

__all__ = ["clustered", "inference", "linalg", "robust"]
