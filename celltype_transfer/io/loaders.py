"""Loading and writing utilities for CellType-Transfer.

Reads reference/query expression from ``.h5ad`` files or gene x cell
delimited tables, and reads label vectors from AnnData ``obs`` or CSV.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import pandas as pd
import scanpy as sc

from ..core.transfer.matrix import ExpressionMatrix
from ..errors import InvalidInputError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

H5AD_SUFFIXES = {".h5ad"}
TABLE_SEPARATORS = {".csv": ",", ".tsv": "\t", ".txt": "\t"}


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def _table_suffix(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] in {".gz", ".bz2", ".zip", ".xz"}:
        suffixes = suffixes[:-1]
    return suffixes[-1] if suffixes else ""


def read_anndata(path: PathLike) -> "sc.AnnData":
    """Read an ``.h5ad`` file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    """
    h5ad_path = Path(path)
    if not h5ad_path.exists():
        raise FileNotFoundError(f"AnnData file not found: {h5ad_path}")
    adata = sc.read_h5ad(h5ad_path)
    logger.info("Loaded %s: %d cells x %d genes", h5ad_path.name, adata.n_obs, adata.n_vars)
    return adata


def read_expression(path: PathLike, layer: Optional[str] = None) -> ExpressionMatrix:
    """Read an expression matrix from ``.h5ad`` or a gene x cell table.

    Delimited tables must hold genes as rows (first column = gene id) and
    cells as columns.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    InvalidInputError
        If the format is not recognised.
    """
    matrix_path = Path(path)
    if not matrix_path.exists():
        raise FileNotFoundError(f"Expression file not found: {matrix_path}")

    suffix = _table_suffix(matrix_path)
    if suffix in H5AD_SUFFIXES:
        return ExpressionMatrix.from_anndata(read_anndata(matrix_path), layer=layer)
    if suffix in TABLE_SEPARATORS:
        df = pd.read_csv(matrix_path, sep=TABLE_SEPARATORS[suffix], index_col=0)
        logger.info("Loaded %s: %d genes x %d cells", matrix_path.name, df.shape[0], df.shape[1])
        return ExpressionMatrix.from_dataframe(df)
    raise InvalidInputError(f"Unsupported expression file format: {matrix_path.name}")


def read_labels(path: PathLike, column: str, index_col: Union[int, str] = 0) -> pd.Series:
    """Read one label column from a CSV keyed by sample/cell identifier.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    InvalidInputError
        If the column is missing.
    """
    labels_path = Path(path)
    if not labels_path.exists():
        raise FileNotFoundError(f"Label file not found: {labels_path}")
    df = pd.read_csv(
        labels_path,
        sep=TABLE_SEPARATORS.get(_table_suffix(labels_path), ","),
        index_col=index_col,
        dtype=str,
        keep_default_na=False,
        na_values=[""],
    )
    if column not in df.columns:
        raise InvalidInputError(
            f"Label column '{column}' not found; available: {list(df.columns)}"
        )
    labels = df[column]
    labels.index = labels.index.astype(str)
    return labels
