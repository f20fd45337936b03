"""Reference-based label transfer.

Builds per-label reference profiles, scores query cells by rank correlation
against every label, and prunes low-confidence assignments.

Main Components:
- ReferenceProfile / build_reference: Immutable per-label reference index
- select_markers: Pairwise marker genes between labels
- CorrelationScorer / HierarchicalScorer: Score query cells
- prune_scores: Per-label delta outlier pruning
- TransferEngine: Orchestrates a full run with exports
"""

from .config import (
    OutputConfig,
    PruningConfig,
    ReferenceConfig,
    ScoringConfig,
    TransferConfig,
)
from .matrix import ExpressionMatrix, as_expression_matrix
from .reference import (
    MarkerTable,
    ReferenceProfile,
    build_reference,
    default_marker_count,
    derive_parents,
    select_markers,
    transform_expression,
)
from .scoring import (
    CorrelationScorer,
    Scorer,
    ScoreResult,
    assign_best_labels,
    rank_scale,
    reconcile_genes,
)
from .hierarchy import HierarchicalScorer
from .pruning import PruningResult, compute_deltas, prune_scores
from .diagnostics import (
    compare_labels,
    delta_distribution,
    label_summary,
    score_heatmap_matrix,
    summarize_deltas,
)
from .assignment import annotate_obs
from .engine import TransferEngine, TransferResult, export_results, make_scorer

__all__ = [
    # Config
    "TransferConfig",
    "ReferenceConfig",
    "ScoringConfig",
    "PruningConfig",
    "OutputConfig",
    # Data
    "ExpressionMatrix",
    "as_expression_matrix",
    # Reference
    "ReferenceProfile",
    "MarkerTable",
    "build_reference",
    "default_marker_count",
    "derive_parents",
    "select_markers",
    "transform_expression",
    # Scoring
    "Scorer",
    "CorrelationScorer",
    "HierarchicalScorer",
    "ScoreResult",
    "assign_best_labels",
    "rank_scale",
    "reconcile_genes",
    # Pruning
    "PruningResult",
    "compute_deltas",
    "prune_scores",
    # Diagnostics
    "score_heatmap_matrix",
    "delta_distribution",
    "summarize_deltas",
    "label_summary",
    "compare_labels",
    # Engine
    "annotate_obs",
    "TransferEngine",
    "TransferResult",
    "export_results",
    "make_scorer",
]
