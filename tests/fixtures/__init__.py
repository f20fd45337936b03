"""Test fixtures for CellType-Transfer.

Provides synthetic reference/query generators.
"""

from .mock_expression import (
    DISJOINT_GENES,
    LINEAGES,
    create_disjoint_query,
    create_disjoint_reference,
    create_query_adata,
    create_reference_adata,
)

__all__ = [
    "DISJOINT_GENES",
    "LINEAGES",
    "create_disjoint_query",
    "create_disjoint_reference",
    "create_query_adata",
    "create_reference_adata",
]
