"""Command-line interface for CellType-Transfer.

Example Usage
-------------
    # From command line:
    celltype-transfer --help
    celltype-transfer build-reference --input ref.h5ad --label-key cell_type --out ref/
    celltype-transfer score --reference ref/reference.joblib --query query.h5ad --out out/
    celltype-transfer prune --checkpoint out/checkpoint --nmads 2.5 --out pruned/
    celltype-transfer annotate --reference ref/reference.joblib --query query.h5ad --out out/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
