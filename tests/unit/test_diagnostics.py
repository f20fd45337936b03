"""Unit tests for diagnostic tables."""

import numpy as np
import pandas as pd
import pytest

from celltype_transfer.core.transfer import (
    compare_labels,
    delta_distribution,
    label_summary,
    prune_scores,
    score_heatmap_matrix,
    summarize_deltas,
)


@pytest.fixture
def disjoint_pruning(disjoint_result):
    return prune_scores(disjoint_result)


class TestHeatmapMatrix:
    def test_row_order_and_annotations(self, disjoint_result, disjoint_pruning):
        matrix, annotations = score_heatmap_matrix(disjoint_result, disjoint_pruning)
        assert list(matrix.index) == ["cell_A", "cell_flat", "cell_B"]
        assert list(annotations.index) == list(matrix.index)
        assert annotations["label"].tolist() == ["A", "A", "B"]
        assert annotations["pruned"].tolist() == [False, True, False]

    def test_normalized_rows(self, disjoint_result):
        matrix, _ = score_heatmap_matrix(disjoint_result)
        assert matrix.loc["cell_A"].tolist() == [1.0, 0.0]
        assert matrix.loc["cell_B"].tolist() == [0.0, 1.0]
        assert matrix.loc["cell_flat"].tolist() == [0.0, 0.0]

    def test_raw_scores(self, disjoint_result):
        matrix, annotations = score_heatmap_matrix(disjoint_result, normalize=False)
        pd.testing.assert_frame_equal(matrix, disjoint_result.scores.loc[matrix.index])
        np.testing.assert_allclose(annotations["top_score"], matrix.max(axis=1))


class TestDeltaTables:
    def test_delta_distribution(self, disjoint_pruning):
        frame = delta_distribution(disjoint_pruning)
        assert list(frame.columns) == ["cell_id", "label", "delta", "delta_next", "pruned"]
        assert len(frame) == 3
        flat = frame.set_index("cell_id").loc["cell_flat"]
        assert flat["pruned"]
        assert flat["delta"] == 0.0

    def test_summarize_deltas(self, disjoint_pruning):
        summary = summarize_deltas(disjoint_pruning)
        assert summary["label"].tolist() == ["A", "B"]
        for column in ["threshold", "n_pruned", "P5", "P50", "P95"]:
            assert column in summary.columns
        b_row = summary.set_index("label").loc["B"]
        assert b_row["P5"] == pytest.approx(b_row["P95"])

    def test_label_summary(self, disjoint_pruning):
        summary = label_summary(disjoint_pruning).set_index("label")
        assert summary.loc["A", "n_assigned"] == 2
        assert summary.loc["A", "n_pruned"] == 1
        assert summary.loc["A", "n_kept"] == 1
        assert summary.loc["A", "frac_assigned"] == pytest.approx(2 / 3)
        assert summary.loc["B", "frac_pruned"] == 0.0


class TestCompareLabels:
    def test_crosstab(self, disjoint_pruning):
        truth = pd.Series({"cell_A": "A", "cell_B": "B", "cell_flat": "A"})
        table = compare_labels(disjoint_pruning.pruned_labels, truth)
        assert table.loc["A", "A"] == 1
        assert table.loc["B", "B"] == 1
        assert table.loc["(pruned)", "A"] == 1

    def test_normalized(self, disjoint_pruning):
        truth = pd.Series({"cell_A": "A", "cell_B": "B", "cell_flat": "A"})
        table = compare_labels(disjoint_pruning.pruned_labels, truth, normalize=True)
        np.testing.assert_allclose(table.sum(axis=0), 1.0)
        assert table.loc["A", "A"] == pytest.approx(0.5)
