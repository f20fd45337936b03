"""Unit tests for writing transfer results into AnnData."""

import numpy as np
import pytest

from celltype_transfer.core.transfer import (
    CorrelationScorer,
    annotate_obs,
    as_expression_matrix,
    prune_scores,
)
from celltype_transfer.errors import InvalidInputError


@pytest.fixture
def scored(lineage_profile, query_adata):
    result = CorrelationScorer().score(lineage_profile, as_expression_matrix(query_adata))
    return result, prune_scores(result)


class TestAnnotateObs:
    def test_columns_written(self, query_adata, scored):
        result, pruning = scored
        annotate_obs(query_adata, result, pruning, label_col="transfer")

        for column in [
            "transfer",
            "transfer_first",
            "transfer_score",
            "transfer_pruned",
            "transfer_delta",
            "transfer_is_pruned",
        ]:
            assert column in query_adata.obs.columns
        assert query_adata.obs["transfer"].tolist() == result.labels.tolist()
        assert list(query_adata.obs["transfer"].cat.categories) == list(result.label_order)
        assert query_adata.obs["transfer_is_pruned"].dtype == bool
        assert query_adata.obsm["transfer_scores"].shape == (query_adata.n_obs, 4)
        assert query_adata.uns["transfer_labels"] == list(result.label_order)

    def test_without_pruning(self, query_adata, scored):
        result, _ = scored
        annotate_obs(query_adata, result)
        assert "transfer_label" in query_adata.obs.columns
        assert "transfer_label_pruned" not in query_adata.obs.columns
        np.testing.assert_allclose(
            query_adata.obs["transfer_label_score"].to_numpy(),
            result.scores.max(axis=1).to_numpy(),
        )

    def test_subset_adata(self, query_adata, scored):
        result, pruning = scored
        subset = query_adata[:5].copy()
        annotate_obs(subset, result, pruning)
        assert subset.obs["transfer_label"].tolist() == result.labels.iloc[:5].tolist()

    def test_cells_without_scores(self, lineage_profile, query_adata):
        partial = as_expression_matrix(query_adata).subset_cells(list(query_adata.obs_names[:3]))
        result = CorrelationScorer().score(lineage_profile, partial)
        with pytest.raises(InvalidInputError) as excinfo:
            annotate_obs(query_adata, result)
        assert excinfo.value.stage == "annotation"
