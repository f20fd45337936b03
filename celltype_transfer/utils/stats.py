"""Statistical utilities for CellType-Transfer.

Provides NaN-aware percentiles and the median/MAD statistics used to find
low-outlier deltas during pruning.
"""

from __future__ import annotations

from typing import Iterable, Sequence, Tuple, Union

import numpy as np

ArrayLike = Union[Iterable[float], np.ndarray]

# Scales the MAD to match the standard deviation of a normal distribution.
MAD_SCALE = 1.4826


def _to_clean_array(values: ArrayLike) -> np.ndarray:
    """Convert input to a float array with non-finite values removed."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr
    return arr[np.isfinite(arr)]


def compute_percentiles(values: ArrayLike, percentiles: Sequence[float]) -> np.ndarray:
    """Compute percentile values ignoring NaNs.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    percentiles : Sequence[float]
        Percentiles to compute (0-100).

    Returns
    -------
    np.ndarray
        Computed percentile values. Returns NaN array if input is empty.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return np.full(len(percentiles), np.nan)
    return np.percentile(arr, percentiles)


def median_and_mad(values: ArrayLike) -> Tuple[float, float]:
    """Return the median and the scaled median absolute deviation.

    The MAD is multiplied by ``MAD_SCALE`` so it estimates a standard
    deviation. Both are NaN for empty input.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return float("nan"), float("nan")
    median = float(np.median(arr))
    mad = float(np.median(np.abs(arr - median))) * MAD_SCALE
    return median, mad


def robust_zscore(
    values: ArrayLike,
    *,
    median: float | None = None,
    mad: float | None = None,
) -> np.ndarray:
    """Compute a robust z-score using the median absolute deviation (MAD).

    Parameters
    ----------
    values : ArrayLike
        Input values.
    median : float, optional
        Pre-computed median. If None, computed from data.
    mad : float, optional
        Pre-computed scaled MAD. If None, computed from data.

    Returns
    -------
    np.ndarray
        Robust z-scores. Non-finite inputs become NaN in output. With a zero
        MAD, values at the median score 0 and any other value scores -inf or
        +inf depending on its side of the median.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr

    mask = np.isfinite(arr)
    clean = arr[mask]
    if clean.size == 0:
        return np.full_like(arr, np.nan, dtype=float)

    if median is None or mad is None:
        data_median, data_mad = median_and_mad(clean)
        median = data_median if median is None else median
        mad = data_mad if mad is None else mad

    if not np.isfinite(mad):
        z = np.zeros_like(clean)
    elif mad == 0:
        diff = clean - median
        z = np.where(diff == 0, 0.0, np.copysign(np.inf, diff))
    else:
        z = (clean - median) / mad

    result = np.full_like(arr, np.nan, dtype=float)
    result[mask] = z
    return result

