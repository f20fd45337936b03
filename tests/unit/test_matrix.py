"""Unit tests for ExpressionMatrix validation and conversion."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from celltype_transfer.core.transfer import ExpressionMatrix, as_expression_matrix
from celltype_transfer.errors import InvalidInputError, TransferError


class TestValidation:
    def test_valid_dense(self):
        matrix = ExpressionMatrix(np.ones((2, 3)), ["g1", "g2"], ["c1", "c2", "c3"])
        assert matrix.n_genes == 2
        assert matrix.n_cells == 3
        assert not matrix.is_sparse

    def test_shape_mismatch(self):
        with pytest.raises(InvalidInputError, match="shape"):
            ExpressionMatrix(np.ones((2, 3)), ["g1", "g2"], ["c1", "c2"])

    def test_duplicate_genes(self):
        with pytest.raises(InvalidInputError, match="Duplicate gene"):
            ExpressionMatrix(np.ones((2, 1)), ["g1", "g1"], ["c1"])

    def test_negative_values(self):
        with pytest.raises(InvalidInputError, match="negative"):
            ExpressionMatrix(np.array([[1.0], [-1.0]]), ["g1", "g2"], ["c1"])

    def test_non_finite_values(self):
        with pytest.raises(InvalidInputError, match="NaN"):
            ExpressionMatrix(np.array([[1.0], [np.nan]]), ["g1", "g2"], ["c1"])

    def test_error_is_value_error_with_stage(self):
        with pytest.raises(ValueError) as excinfo:
            ExpressionMatrix(np.ones((1, 1)), ["g1", "g2"], ["c1"])
        assert isinstance(excinfo.value, TransferError)
        assert excinfo.value.stage == "input"
        assert str(excinfo.value).startswith("[input]")


class TestConversion:
    def test_sparse_is_csr(self):
        values = sparse.csc_matrix(np.eye(3))
        matrix = ExpressionMatrix(values, ["g1", "g2", "g3"], ["c1", "c2", "c3"])
        assert matrix.is_sparse
        assert matrix.values.format == "csr"
        np.testing.assert_array_equal(matrix.dense_block([2, 0], 1, 3), [[0, 1], [0, 0]])

    def test_from_dataframe(self):
        df = pd.DataFrame({"c1": [1, 2], "c2": [3, 4]}, index=["g1", "g2"])
        matrix = ExpressionMatrix.from_dataframe(df)
        assert matrix.genes == ("g1", "g2")
        assert matrix.cells == ("c1", "c2")
        pd.testing.assert_frame_equal(
            matrix.to_dataframe(), df.astype(float), check_names=False
        )

    def test_from_anndata_transposes(self, query_adata):
        matrix = as_expression_matrix(query_adata)
        assert matrix.n_genes == query_adata.n_vars
        assert matrix.n_cells == query_adata.n_obs
        assert matrix.cells[0] == query_adata.obs_names[0]

    def test_missing_layer(self, query_adata):
        with pytest.raises(InvalidInputError, match="Layer"):
            ExpressionMatrix.from_anndata(query_adata, layer="counts")

    def test_unsupported_type(self):
        with pytest.raises(InvalidInputError):
            as_expression_matrix([[1, 2], [3, 4]])

    def test_subset(self):
        matrix = ExpressionMatrix(np.arange(6).reshape(2, 3), ["g1", "g2"], ["c1", "c2", "c3"])
        sub = matrix.subset_cells(["c3", "c1"]).subset_genes(["g2"])
        np.testing.assert_array_equal(sub.values, [[5.0, 3.0]])
        with pytest.raises(InvalidInputError):
            matrix.subset_genes(["g9"])
