"""CellType-Transfer: reference-based cell-type label transfer for scRNA-seq.

This package provides tools for:
- Building per-label reference profiles from an annotated expression dataset
- Scoring query cells against every reference label (rank correlation)
- Optional fine-tuning and two-pass (coarse -> fine) scoring
- Pruning low-confidence assignments from per-label delta distributions
- Exporting heatmap-ready score matrices and delta-distribution tables

Example usage:
    >>> from celltype_transfer.core.transfer import TransferEngine
    >>>
    >>> engine = TransferEngine()
    >>> reference = engine.build_reference(ref_adata, label_key="label.fine")
    >>> result = engine.run(reference, query_adata, output_dir="out/")
    >>> result.pruning.pruned_labels.value_counts()
"""

__version__ = "0.1.0"
