"""Gene-by-cell expression matrices.

Reference and query data are both carried as ``ExpressionMatrix`` objects:
genes on the row axis, cells (or reference samples) on the column axis.
AnnData stores cells x genes, so conversion from AnnData transposes.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import sparse

import anndata as ad

from ...errors import InvalidInputError

MatrixLike = Union[np.ndarray, sparse.spmatrix]


def _duplicates(names: Sequence[str]) -> List[str]:
    return [name for name, count in Counter(names).items() if count > 1]


@dataclass(frozen=True)
class ExpressionMatrix:
    """Non-negative expression values indexed by (gene, cell).

    Attributes:
        values: Dense array or CSR matrix with shape (n_genes, n_cells)
        genes: Gene identifiers, one per row
        cells: Cell (or sample) identifiers, one per column
    """

    values: MatrixLike
    genes: Tuple[str, ...]
    cells: Tuple[str, ...]

    def __post_init__(self) -> None:
        values = self.values
        if sparse.issparse(values):
            values = sparse.csr_matrix(values, dtype=np.float64)
            data = values.data
        else:
            values = np.asarray(values, dtype=np.float64)
            if values.ndim != 2:
                raise InvalidInputError(
                    f"Expression matrix must be 2-D, got {values.ndim}-D"
                )
            data = values

        genes = tuple(str(g) for g in self.genes)
        cells = tuple(str(c) for c in self.cells)

        if values.shape != (len(genes), len(cells)):
            raise InvalidInputError(
                f"Matrix shape {values.shape} does not match "
                f"{len(genes)} genes x {len(cells)} cells"
            )
        dup_genes = _duplicates(genes)
        if dup_genes:
            raise InvalidInputError(f"Duplicate gene identifiers: {dup_genes[:10]}")
        dup_cells = _duplicates(cells)
        if dup_cells:
            raise InvalidInputError(f"Duplicate cell identifiers: {dup_cells[:10]}")
        if data.size and not np.all(np.isfinite(data)):
            raise InvalidInputError("Expression matrix contains NaN or infinite values")
        if data.size and data.min() < 0:
            raise InvalidInputError("Expression matrix contains negative values")

        object.__setattr__(self, "values", values)
        object.__setattr__(self, "genes", genes)
        object.__setattr__(self, "cells", cells)

    @property
    def n_genes(self) -> int:
        return len(self.genes)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def is_sparse(self) -> bool:
        return sparse.issparse(self.values)

    @property
    def gene_index(self) -> Dict[str, int]:
        """Gene identifier -> row position."""
        return {gene: idx for idx, gene in enumerate(self.genes)}

    @property
    def cell_index(self) -> Dict[str, int]:
        """Cell identifier -> column position."""
        return {cell: idx for idx, cell in enumerate(self.cells)}

    def dense_block(
        self,
        rows: Sequence[int],
        start: int = 0,
        stop: Optional[int] = None,
    ) -> np.ndarray:
        """Return the given rows for columns ``start:stop`` as a dense array."""
        rows = np.asarray(rows, dtype=int)
        block = self.values[rows, :][:, start:stop]
        if sparse.issparse(block):
            return block.toarray()
        return np.array(block, dtype=np.float64)

    def subset_genes(self, genes: Sequence[str]) -> "ExpressionMatrix":
        """Restrict to ``genes`` in the given order."""
        index = self.gene_index
        missing = [g for g in genes if g not in index]
        if missing:
            raise InvalidInputError(f"Genes not in matrix: {missing[:10]}")
        rows = [index[g] for g in genes]
        return ExpressionMatrix(self.values[rows, :], tuple(genes), self.cells)

    def subset_cells(self, cells: Sequence[str]) -> "ExpressionMatrix":
        """Restrict to ``cells`` in the given order."""
        index = self.cell_index
        missing = [c for c in cells if c not in index]
        if missing:
            raise InvalidInputError(f"Cells not in matrix: {missing[:10]}")
        cols = [index[c] for c in cells]
        return ExpressionMatrix(self.values[:, cols], self.genes, tuple(cells))

    def to_dataframe(self) -> pd.DataFrame:
        """Dense genes x cells DataFrame."""
        values = self.values.toarray() if self.is_sparse else self.values
        return pd.DataFrame(
            values,
            index=pd.Index(self.genes, name="gene"),
            columns=pd.Index(self.cells, name="cell_id"),
        )

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "ExpressionMatrix":
        """Build from a genes x cells DataFrame (genes as index)."""
        values = df.apply(pd.to_numeric, errors="coerce").to_numpy(dtype=np.float64)
        return cls(values, tuple(df.index.astype(str)), tuple(df.columns.astype(str)))

    @classmethod
    def from_anndata(
        cls,
        adata: "ad.AnnData",
        layer: Optional[str] = None,
    ) -> "ExpressionMatrix":
        """Build from AnnData (cells x genes), reading ``X`` or ``layer``."""
        if layer is None or layer == "X":
            matrix = adata.X
        elif layer in adata.layers:
            matrix = adata.layers[layer]
        else:
            raise InvalidInputError(
                f"Layer '{layer}' not found; available: {list(adata.layers.keys())}"
            )
        if matrix is None:
            raise InvalidInputError("AnnData has no expression matrix in X")
        values = matrix.T if sparse.issparse(matrix) else np.asarray(matrix).T
        return cls(
            values,
            tuple(adata.var_names.astype(str)),
            tuple(adata.obs_names.astype(str)),
        )


def as_expression_matrix(source: Any, layer: Optional[str] = None) -> ExpressionMatrix:
    """Coerce AnnData, a genes x cells DataFrame or an ExpressionMatrix."""
    if isinstance(source, ExpressionMatrix):
        return source
    if isinstance(source, ad.AnnData):
        return ExpressionMatrix.from_anndata(source, layer=layer)
    if isinstance(source, pd.DataFrame):
        return ExpressionMatrix.from_dataframe(source)
    raise InvalidInputError(
        f"Unsupported expression input type: {type(source).__name__}"
    )
