"""Pruning of low-confidence label assignments.

For every cell the delta is the margin of its top score over the median of
its score row. Within each assigned label the deltas form an empirical
distribution; cells more than ``nmads`` scaled MADs below the label's
median delta are pruned. Two optional absolute rules apply on top: a floor
on the delta itself and a minimum margin over the runner-up label.

Pruning only nulls labels. Scores and the labels of kept cells are never
changed, and a pruned cell is never given a different label.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from ...errors import InvalidInputError
from ...utils.stats import median_and_mad, robust_zscore
from .config import PruningConfig
from .scoring import ScoreResult

REASON_DELTA_OUTLIER = "delta_outlier"
REASON_MIN_DIFF_MED = "below_min_diff_med"
REASON_MIN_DIFF_NEXT = "below_min_diff_next"


@dataclass
class PruningResult:
    """Per-cell pruning decisions plus per-label thresholds.

    Attributes:
        cells: Indexed by cell with columns ``label``, ``pruned_label``,
            ``top_score``, ``delta_median``, ``delta_next``,
            ``delta_zscore``, ``is_pruned``, ``prune_reason``. Within a label
            whose deltas have zero MAD, ``delta_zscore`` is -inf below the
            median and +inf above it
        thresholds: One row per label with ``n_cells``, ``median_delta``,
            ``mad``, ``threshold``, ``n_pruned``
        config: Parameters used
    """

    cells: pd.DataFrame
    thresholds: pd.DataFrame
    config: PruningConfig

    @property
    def pruned_labels(self) -> pd.Series:
        """Labels with pruned cells set to None."""
        return self.cells["pruned_label"]

    @property
    def n_pruned(self) -> int:
        return int(self.cells["is_pruned"].sum())

    def to_mapping(self) -> Dict[str, Optional[str]]:
        """Cell identifier -> final label (None when pruned)."""
        return {
            cell: (label if isinstance(label, str) else None)
            for cell, label in self.pruned_labels.items()
        }


def compute_deltas(scores: pd.DataFrame) -> pd.DataFrame:
    """Top score, delta from the row median and delta from the runner-up.

    NaN scores are ignored. ``delta_next`` is NaN for rows with fewer than
    two finite scores.
    """
    values = scores.to_numpy(dtype=float)
    n_rows, n_cols = values.shape
    finite = np.isfinite(values)
    n_finite = finite.sum(axis=1)

    filled = np.where(finite, values, -np.inf)
    ordered = -np.sort(-filled, axis=1)
    top = ordered[:, 0] if n_cols else np.full(n_rows, -np.inf)
    second = ordered[:, 1] if n_cols > 1 else np.full(n_rows, -np.inf)

    # All-NaN rows (cells outside every scored group) warn in nanmedian
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        if n_cols:
            median = np.nanmedian(np.where(finite, values, np.nan), axis=1)
        else:
            median = np.full(n_rows, np.nan)

    top = np.where(n_finite > 0, top, np.nan)
    delta_median = top - median
    delta_next = np.where(n_finite > 1, top - second, np.nan)

    return pd.DataFrame(
        {
            "top_score": top,
            "delta_median": delta_median,
            "delta_next": delta_next,
        },
        index=scores.index,
    )


def prune_scores(
    result: ScoreResult,
    config: Optional[PruningConfig] = None,
    labels: Optional[pd.Series] = None,
    logger: Optional[logging.Logger] = None,
) -> PruningResult:
    """Flag low-confidence assignments.

    Args:
        result: Scores and labels from a scorer
        config: Pruning parameters
        labels: Labels to group and prune (default: ``result.labels``)
        logger: Logger instance

    Returns:
        PruningResult; ``result`` is not modified
    """
    config = config or PruningConfig()
    logger = logger or logging.getLogger(__name__)

    labels = result.labels if labels is None else labels
    if not labels.index.equals(result.scores.index):
        if set(labels.index) != set(result.scores.index):
            raise InvalidInputError(
                "Labels and score matrix cover different cells", stage="pruning"
            )
        labels = labels.reindex(result.scores.index)

    frame = compute_deltas(result.scores)
    label_values = labels.to_numpy(dtype=object)
    assigned = np.asarray([isinstance(v, str) for v in label_values], dtype=bool)
    frame.insert(0, "label", pd.Series(label_values, index=frame.index, dtype=object))

    delta = frame["delta_median"].to_numpy(dtype=float)
    zscores = np.full(len(frame), np.nan)
    outlier = np.zeros(len(frame), dtype=bool)
    records: List[Dict[str, object]] = []

    for label in result.label_order:
        mask = assigned & (label_values == label)
        n_cells = int(mask.sum())
        if n_cells == 0:
            records.append({
                "label": label,
                "n_cells": 0,
                "median_delta": np.nan,
                "mad": np.nan,
                "threshold": np.nan,
            })
            continue
        median, mad = median_and_mad(delta[mask])
        threshold = median - config.nmads * mad if np.isfinite(median) else np.nan
        with np.errstate(invalid="ignore"):
            outlier[mask] = delta[mask] < threshold
        zscores[mask] = robust_zscore(delta[mask], median=median, mad=mad)
        records.append({
            "label": label,
            "n_cells": n_cells,
            "median_delta": median,
            "mad": mad,
            "threshold": threshold,
        })

    below_med = np.zeros(len(frame), dtype=bool)
    if config.min_diff_med is not None:
        with np.errstate(invalid="ignore"):
            below_med = delta < config.min_diff_med

    delta_next = frame["delta_next"].to_numpy(dtype=float)
    with np.errstate(invalid="ignore"):
        below_next = delta_next <= config.min_diff_next

    outlier &= assigned
    below_med &= assigned
    below_next &= assigned
    is_pruned = outlier | below_med | below_next

    reasons = []
    for flags in zip(outlier, below_med, below_next):
        names = [
            name
            for name, flag in zip(
                (REASON_DELTA_OUTLIER, REASON_MIN_DIFF_MED, REASON_MIN_DIFF_NEXT), flags
            )
            if flag
        ]
        reasons.append(";".join(names))

    frame["delta_zscore"] = zscores
    frame["is_pruned"] = is_pruned
    frame["prune_reason"] = reasons
    pruned_label = np.where(is_pruned | ~assigned, None, label_values)
    frame.insert(1, "pruned_label", pd.Series(pruned_label, index=frame.index, dtype=object))

    thresholds = pd.DataFrame.from_records(
        records, columns=["label", "n_cells", "median_delta", "mad", "threshold"]
    )
    pruned_counts = frame.loc[frame["is_pruned"], "label"].value_counts()
    thresholds["n_pruned"] = (
        thresholds["label"].map(pruned_counts).fillna(0).astype(int)
    )

    logger.info(
        "Pruned %d/%d cells (nmads=%.1f, min_diff_med=%s, min_diff_next=%s)",
        int(is_pruned.sum()),
        len(frame),
        config.nmads,
        config.min_diff_med,
        config.min_diff_next,
    )
    for row in thresholds.itertuples(index=False):
        if row.n_pruned:
            logger.debug("  %s: %d/%d pruned", row.label, row.n_pruned, row.n_cells)

    return PruningResult(cells=frame, thresholds=thresholds, config=config)
