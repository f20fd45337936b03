"""Unit tests for pruning low-confidence assignments."""

import numpy as np
import pandas as pd
import pytest

from celltype_transfer.core.transfer import (
    CorrelationScorer,
    PruningConfig,
    ScoreResult,
    as_expression_matrix,
    assign_best_labels,
    compute_deltas,
    prune_scores,
)
from celltype_transfer.errors import InvalidInputError


def _result_from_rows(rows, labels=("X", "Y", "Z")):
    scores = pd.DataFrame(
        rows,
        index=pd.Index([f"c{i + 1}" for i in range(len(rows))], name="cell_id"),
        columns=pd.Index(list(labels), name="label"),
    )
    return ScoreResult(scores=scores, assignment=assign_best_labels(scores))


@pytest.fixture
def outlier_result():
    """Six X cells; c6 has a much smaller margin than the rest."""
    return _result_from_rows([
        [0.80, 0.20, 0.10],
        [0.82, 0.20, 0.10],
        [0.78, 0.20, 0.10],
        [0.81, 0.20, 0.10],
        [0.79, 0.20, 0.10],
        [0.40, 0.35, 0.10],
    ])


class TestComputeDeltas:
    def test_values(self):
        result = _result_from_rows([[0.9, 0.5, 0.1]])
        deltas = compute_deltas(result.scores)
        assert deltas.loc["c1", "top_score"] == pytest.approx(0.9)
        assert deltas.loc["c1", "delta_median"] == pytest.approx(0.4)
        assert deltas.loc["c1", "delta_next"] == pytest.approx(0.4)

    def test_nan_scores_ignored(self):
        result = _result_from_rows([[np.nan, 0.5, 0.1], [np.nan, np.nan, 0.3]])
        deltas = compute_deltas(result.scores)
        assert deltas.loc["c1", "delta_next"] == pytest.approx(0.4)
        assert deltas.loc["c2", "delta_median"] == 0.0
        assert np.isnan(deltas.loc["c2", "delta_next"])


class TestScenarios:
    """Pruning on the hand-built two-label data."""

    def test_disjoint_cells_kept(self, disjoint_profile, disjoint_query):
        result = CorrelationScorer().score(disjoint_profile, disjoint_query)
        pruning = prune_scores(result)
        assert pruning.n_pruned == 0
        assert pruning.pruned_labels.tolist() == ["A", "B"]

    def test_flat_cell_pruned(self, disjoint_result):
        pruning = prune_scores(disjoint_result)
        cells = pruning.cells
        assert cells.loc["cell_flat", "is_pruned"]
        assert cells.loc["cell_flat", "pruned_label"] is None
        assert cells.loc["cell_flat", "prune_reason"] == "below_min_diff_next"
        assert not cells.loc["cell_A", "is_pruned"]
        assert not cells.loc["cell_B", "is_pruned"]
        assert pruning.to_mapping() == {"cell_A": "A", "cell_B": "B", "cell_flat": None}

    def test_delta_outlier(self, outlier_result):
        pruning = prune_scores(outlier_result)
        cells = pruning.cells
        assert cells["is_pruned"].tolist() == [False] * 5 + [True]
        assert cells.loc["c6", "prune_reason"] == "delta_outlier"
        assert cells.loc["c6", "delta_zscore"] < -3

        thresholds = pruning.thresholds.set_index("label")
        assert thresholds.loc["X", "n_cells"] == 6
        assert thresholds.loc["X", "n_pruned"] == 1
        assert thresholds.loc["X", "median_delta"] == pytest.approx(0.595)
        assert thresholds.loc["Y", "n_cells"] == 0
        assert np.isnan(thresholds.loc["Y", "threshold"])

    def test_delta_outlier_with_zero_mad(self):
        result = _result_from_rows([
            [0.80, 0.20, 0.10],
            [0.80, 0.20, 0.10],
            [0.80, 0.20, 0.10],
            [0.50, 0.20, 0.10],
        ])
        pruning = prune_scores(result)

        cells = pruning.cells
        assert pruning.thresholds.set_index("label").loc["X", "mad"] == 0.0
        assert cells["is_pruned"].tolist() == [False, False, False, True]
        assert cells.loc["c4", "prune_reason"] == "delta_outlier"
        assert cells.loc["c4", "delta_zscore"] == -np.inf
        assert (cells.loc[["c1", "c2", "c3"], "delta_zscore"] == 0.0).all()

    def test_min_diff_med(self, outlier_result):
        pruning = prune_scores(outlier_result, PruningConfig(nmads=100, min_diff_med=0.595))
        assert pruning.cells.loc["c3", "prune_reason"] == "below_min_diff_med"
        assert pruning.cells.loc["c6", "prune_reason"] == "below_min_diff_med"
        assert not pruning.cells.loc["c1", "is_pruned"]
        assert pruning.n_pruned == 3

    def test_min_diff_next(self, outlier_result):
        pruning = prune_scores(outlier_result, PruningConfig(nmads=100, min_diff_next=0.1))
        assert pruning.cells["is_pruned"].tolist() == [False] * 5 + [True]
        assert pruning.cells.loc["c6", "prune_reason"] == "below_min_diff_next"

    def test_combined_reasons(self, outlier_result):
        pruning = prune_scores(outlier_result, PruningConfig(min_diff_next=0.1))
        assert pruning.cells.loc["c6", "prune_reason"] == "delta_outlier;below_min_diff_next"


class TestInvariants:
    def test_scores_and_labels_unchanged(self, lineage_profile, query_adata):
        result = CorrelationScorer().score(lineage_profile, as_expression_matrix(query_adata))
        scores_before = result.scores.copy()
        labels_before = result.labels.copy()

        pruning = prune_scores(result, PruningConfig(nmads=0.5))

        pd.testing.assert_frame_equal(result.scores, scores_before)
        pd.testing.assert_series_equal(result.labels, labels_before)
        np.testing.assert_allclose(
            pruning.cells["top_score"].to_numpy(), result.scores.max(axis=1).to_numpy()
        )
        kept = ~pruning.cells["is_pruned"]
        assert (pruning.pruned_labels[kept] == labels_before[kept]).all()
        assert pruning.pruned_labels[~kept].isna().all()

    def test_nmads_monotone(self, lineage_profile, query_adata):
        result = CorrelationScorer().score(lineage_profile, as_expression_matrix(query_adata))
        previous = None
        for nmads in [0.0, 0.5, 1.0, 2.0, 3.0, 5.0]:
            pruned = set(prune_scores(result, PruningConfig(nmads=nmads)).cells.query("is_pruned").index)
            if previous is not None:
                assert pruned <= previous
            previous = pruned

    def test_unassigned_cells_not_pruned(self):
        result = _result_from_rows([[0.9, 0.1, 0.1], [np.nan, np.nan, np.nan]])
        pruning = prune_scores(result)
        assert not pruning.cells.loc["c2", "is_pruned"]
        assert pruning.cells.loc["c2", "pruned_label"] is None

    def test_labels_must_cover_same_cells(self, outlier_result):
        labels = pd.Series(["X"], index=["other"])
        with pytest.raises(InvalidInputError) as excinfo:
            prune_scores(outlier_result, labels=labels)
        assert excinfo.value.stage == "pruning"
