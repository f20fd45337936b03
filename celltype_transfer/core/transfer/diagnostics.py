"""Diagnostic tables for annotation QC.

Produces plot-ready data only: a heatmap-ready score matrix with row
annotations, per-label delta distributions, and summary tables. Rendering
is left to the caller.
"""

from __future__ import annotations

import warnings
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ...utils.stats import compute_percentiles
from .pruning import PruningResult
from .scoring import ScoreResult

DEFAULT_DELTA_PERCENTILES = (5, 25, 50, 75, 95)


def score_heatmap_matrix(
    result: ScoreResult,
    pruning: Optional[PruningResult] = None,
    normalize: bool = True,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Score matrix ordered for a cells x labels heatmap.

    Rows are grouped by final label (in label order) and sorted by
    descending top score within each group.

    Args:
        result: Score result
        pruning: Optional pruning result; adds a ``pruned`` annotation
        normalize: Min-max scale each row to [0, 1]

    Returns:
        Tuple of (matrix, row_annotations)
    """
    matrix = result.scores.copy()
    values = matrix.to_numpy(dtype=float)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        row_min = np.nanmin(values, axis=1, keepdims=True) if values.size else values
        row_max = np.nanmax(values, axis=1, keepdims=True) if values.size else values

    if normalize and values.size:
        span = row_max - row_min
        scaled = np.zeros_like(values)
        np.divide(values - row_min, span, out=scaled, where=span > 0)
        scaled[np.isnan(values)] = np.nan
        matrix = pd.DataFrame(scaled, index=matrix.index, columns=matrix.columns)

    annotations = pd.DataFrame(index=matrix.index)
    annotations["label"] = pd.Categorical(result.labels, categories=list(result.label_order))
    annotations["top_score"] = row_max[:, 0] if values.size else np.nan
    if pruning is not None:
        annotations["pruned"] = pruning.cells["is_pruned"].reindex(matrix.index)

    order = annotations.sort_values(
        ["label", "top_score"], ascending=[True, False], kind="mergesort"
    ).index
    return matrix.loc[order], annotations.loc[order]


def delta_distribution(pruning: PruningResult) -> pd.DataFrame:
    """Long table of per-cell deltas, one empirical distribution per label.

    Columns: ``cell_id``, ``label``, ``delta``, ``delta_next``, ``pruned``.
    Cells without a label are omitted.
    """
    cells = pruning.cells
    frame = pd.DataFrame({
        "cell_id": cells.index.astype(str),
        "label": cells["label"].to_numpy(dtype=object),
        "delta": cells["delta_median"].to_numpy(dtype=float),
        "delta_next": cells["delta_next"].to_numpy(dtype=float),
        "pruned": cells["is_pruned"].to_numpy(dtype=bool),
    })
    labeled = frame["label"].map(lambda v: isinstance(v, str)).astype(bool)
    return frame.loc[labeled].reset_index(drop=True)


def summarize_deltas(
    pruning: PruningResult,
    percentiles: Sequence[float] = DEFAULT_DELTA_PERCENTILES,
) -> pd.DataFrame:
    """Per-label delta percentiles joined with the pruning thresholds."""
    distribution = delta_distribution(pruning)
    records = []
    for label in pruning.thresholds["label"]:
        values = distribution.loc[distribution["label"] == label, "delta"]
        record = {"label": label}
        for p, value in zip(percentiles, compute_percentiles(values, percentiles)):
            record[f"P{p:g}"] = float(value)
        records.append(record)
    summary = pd.DataFrame.from_records(records)
    if summary.empty:
        return pruning.thresholds.copy()
    return pruning.thresholds.merge(summary, on="label", how="left")


def label_summary(pruning: PruningResult) -> pd.DataFrame:
    """Assigned, pruned and kept cell counts per label."""
    summary = pruning.thresholds[["label", "n_cells", "n_pruned"]].copy()
    summary = summary.rename(columns={"n_cells": "n_assigned"})
    summary["n_kept"] = summary["n_assigned"] - summary["n_pruned"]
    total = max(int(summary["n_assigned"].sum()), 1)
    summary["frac_assigned"] = summary["n_assigned"] / total
    summary["frac_pruned"] = summary["n_pruned"] / summary["n_assigned"].clip(lower=1)
    return summary


def compare_labels(
    predicted: pd.Series,
    truth: pd.Series,
    pruned_label: str = "(pruned)",
    normalize: bool = False,
) -> pd.DataFrame:
    """Cross-tabulate predicted labels against held-out labels.

    Args:
        predicted: Predicted label per cell (None for pruned cells)
        truth: Known label per cell
        pruned_label: Row name used for cells without a prediction
        normalize: Express each truth column as fractions

    Returns:
        DataFrame with predicted labels as rows and truth labels as columns
    """
    predicted = predicted.reindex(truth.index)
    predicted = predicted.map(lambda v: v if isinstance(v, str) else pruned_label)
    table = pd.crosstab(
        predicted.rename("predicted"),
        truth.astype(str).rename("truth"),
    )
    if normalize:
        table = table / table.sum(axis=0).replace(0, 1)
    return table
