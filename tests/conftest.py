"""Pytest configuration and shared fixtures for CellType-Transfer tests."""

import sys
from pathlib import Path

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from celltype_transfer.core.transfer import (
    CorrelationScorer,
    ReferenceConfig,
    build_reference,
)
from tests.fixtures import (
    create_disjoint_query,
    create_disjoint_reference,
    create_query_adata,
    create_reference_adata,
)


# ============================================================================
# Disjoint two-label scenario
# ============================================================================


@pytest.fixture
def disjoint_reference_data():
    """(matrix, labels) for the two-label disjoint-marker reference."""
    return create_disjoint_reference()


@pytest.fixture
def disjoint_profile(disjoint_reference_data):
    """Reference profile built from the disjoint scenario."""
    matrix, labels = disjoint_reference_data
    return build_reference(matrix, labels)


@pytest.fixture
def disjoint_query():
    """Query with one A-like and one B-like cell."""
    return create_disjoint_query()


@pytest.fixture
def flat_query():
    """Query with A-like, B-like and a flat cell."""
    return create_disjoint_query(include_flat=True)


@pytest.fixture
def disjoint_result(disjoint_profile, flat_query):
    """Score result for the three-cell query."""
    return CorrelationScorer().score(disjoint_profile, flat_query)


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def reference_adata():
    """Reference AnnData with cell_type and lineage columns."""
    return create_reference_adata()


@pytest.fixture
def query_adata():
    """Query AnnData with held-out true_label."""
    return create_query_adata()


@pytest.fixture
def lineage_profile(reference_adata):
    """Reference profile with a fine -> coarse mapping."""
    from celltype_transfer.core.transfer import TransferEngine, TransferConfig

    config = TransferConfig(reference=ReferenceConfig(coarse_key="lineage"))
    return TransferEngine(config).build_reference(reference_adata)


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir
