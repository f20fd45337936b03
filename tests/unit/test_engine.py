"""Unit tests for TransferEngine."""

import numpy as np
import pandas as pd
import pytest
import yaml

from celltype_transfer.core.transfer import (
    CorrelationScorer,
    ExpressionMatrix,
    HierarchicalScorer,
    ScoringConfig,
    TransferConfig,
    TransferEngine,
    make_scorer,
)
from celltype_transfer.errors import InsufficientOverlapError, InvalidInputError


class TestBuildReference:
    def test_from_anndata(self, reference_adata):
        profile = TransferEngine().build_reference(reference_adata)
        assert profile.labels == ("B cells", "Monocytes", "NK cells", "T cells")
        assert profile.parents is None

    def test_with_coarse_key(self, reference_adata):
        profile = TransferEngine().build_reference(reference_adata, coarse_key="lineage")
        assert profile.parents["Monocytes"] == "Myeloid"
        assert profile.parents["T cells"] == "Lymphoid"

    def test_missing_label_key(self, reference_adata):
        with pytest.raises(InvalidInputError, match="not found") as excinfo:
            TransferEngine().build_reference(reference_adata, label_key="label.fine")
        assert excinfo.value.stage == "reference"

    def test_matrix_requires_labels(self, disjoint_reference_data):
        matrix, labels = disjoint_reference_data
        with pytest.raises(InvalidInputError):
            TransferEngine().build_reference(matrix)
        profile = TransferEngine().build_reference(matrix, labels=labels)
        assert profile.labels == ("A", "B")


class TestMakeScorer:
    def test_default(self):
        scorer = make_scorer(TransferConfig())
        assert isinstance(scorer, CorrelationScorer)

    def test_two_pass(self, lineage_profile):
        config = TransferConfig(scoring=ScoringConfig(two_pass=True, n_jobs=2))
        scorer = make_scorer(config, lineage_profile)
        assert isinstance(scorer, HierarchicalScorer)
        assert scorer.base.n_jobs == 2

    def test_two_pass_without_parents(self, disjoint_profile):
        config = TransferConfig(scoring=ScoringConfig(two_pass=True))
        with pytest.raises(InvalidInputError, match="coarse"):
            make_scorer(config, disjoint_profile)


class TestRun:
    def test_run_without_output(self, lineage_profile, query_adata):
        result = TransferEngine().run(lineage_profile, query_adata)
        assert len(result.labels) == query_adata.n_obs
        assert set(result.timings) == {"scoring", "pruning"}
        assert result.output_files == {}

    def test_run_writes_outputs(self, lineage_profile, query_adata, tmp_output_dir):
        result = TransferEngine().run(lineage_profile, query_adata, output_dir=tmp_output_dir)

        for name in [
            "scores.csv",
            "assignments.csv",
            "label_thresholds.csv",
            "delta_distribution.csv",
            "label_summary.csv",
            "heatmap_matrix.csv",
            "heatmap_annotations.csv",
            "run_record.yaml",
            "checkpoint/scores.csv",
        ]:
            assert (tmp_output_dir / name).exists(), name
        assert "export" in result.timings

        assignments = pd.read_csv(tmp_output_dir / "assignments.csv", index_col="cell_id")
        for column in ["assignment", "label", "pruned_label", "delta_median", "is_pruned"]:
            assert column in assignments.columns
        assert len(assignments) == query_adata.n_obs

        scores = pd.read_csv(tmp_output_dir / "scores.csv", index_col="cell_id")
        np.testing.assert_allclose(scores.to_numpy(), result.scores.scores.to_numpy())

        with open(tmp_output_dir / "run_record.yaml") as f:
            record = next(yaml.safe_load_all(f))
        assert record["n_cells"] == query_adata.n_obs
        assert record["reference"]["n_labels"] == 4

    def test_run_empty_query(self, lineage_profile, tmp_output_dir):
        genes = list(lineage_profile.genes)
        query = ExpressionMatrix(np.zeros((len(genes), 0)), genes, [])
        result = TransferEngine().run(lineage_profile, query, output_dir=tmp_output_dir)

        assert len(result.labels) == 0
        assert result.pruning.n_pruned == 0
        thresholds = pd.read_csv(tmp_output_dir / "label_thresholds.csv")
        assert list(thresholds["label"]) == list(lineage_profile.labels)
        assert (thresholds["n_cells"] == 0).all()
        distribution = pd.read_csv(tmp_output_dir / "delta_distribution.csv")
        assert "label" in distribution.columns
        assert len(distribution) == 0

    def test_run_two_pass(self, lineage_profile, query_adata):
        engine = TransferEngine(TransferConfig(scoring=ScoringConfig(two_pass=True)))
        result = engine.run(lineage_profile, query_adata)
        assert result.scores.scorer == "hierarchical"
        assert result.scores.coarse is not None

    def test_run_accepts_dataframe(self, disjoint_profile, disjoint_query):
        result = TransferEngine().run(disjoint_profile, disjoint_query.to_dataframe())
        assert result.labels.tolist() == ["A", "B"]

    def test_error_carries_stage(self, disjoint_profile):
        query = pd.DataFrame({"c1": [1.0, 2.0]}, index=["X1", "X2"])
        with pytest.raises(InsufficientOverlapError) as excinfo:
            TransferEngine().run(disjoint_profile, query)
        assert excinfo.value.stage == "scoring"

    def test_annotate(self, lineage_profile, query_adata):
        engine = TransferEngine()
        result = engine.run(lineage_profile, query_adata)
        engine.annotate(query_adata, result)
        assert "transfer_label" in query_adata.obs.columns
        assert "transfer_label_is_pruned" in query_adata.obs.columns
