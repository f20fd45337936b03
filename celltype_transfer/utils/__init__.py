"""Utility functions for CellType-Transfer.

Provides statistical helpers used by the pruning and diagnostics modules.
"""

from .stats import (
    MAD_SCALE,
    compute_percentiles,
    median_and_mad,
    robust_zscore,
)

__all__ = [
    "MAD_SCALE",
    "compute_percentiles",
    "median_and_mad",
    "robust_zscore",
]
