"""Label-transfer engine.

This module provides the TransferEngine class that orchestrates a transfer
run: reference building, scoring, pruning, exports and AnnData annotation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

import pandas as pd

import anndata as ad

from ...errors import InvalidInputError, TransferError
from .assignment import annotate_obs
from .config import TransferConfig
from .diagnostics import (
    delta_distribution,
    label_summary,
    score_heatmap_matrix,
    summarize_deltas,
)
from .hierarchy import HierarchicalScorer
from .matrix import as_expression_matrix
from .pruning import PruningResult, prune_scores
from .reference import ReferenceProfile, build_reference, derive_parents
from .scoring import CorrelationScorer, Scorer, ScoreResult


@dataclass
class TransferResult:
    """Result from a transfer run.

    Attributes:
        scores: Score result (scores, arg-max and fine-tuned labels)
        pruning: Pruning decisions and per-label thresholds
        timings: Seconds spent per stage
        output_files: Files written, keyed by table name
    """

    scores: ScoreResult
    pruning: PruningResult
    timings: Dict[str, float] = field(default_factory=dict)
    output_files: Dict[str, Path] = field(default_factory=dict)

    @property
    def labels(self) -> pd.Series:
        """Final labels with pruned cells set to None."""
        return self.pruning.pruned_labels

    def assignments(self) -> pd.DataFrame:
        """Per-cell table: labels, top score, deltas and pruning flags."""
        frame = self.scores.to_frame()
        extra = self.pruning.cells.drop(columns=["label", "top_score"])
        return frame.join(extra)


def make_scorer(config: TransferConfig, reference: Optional[ReferenceProfile] = None) -> Scorer:
    """Build the scorer described by ``config.scoring``.

    Raises:
        InvalidInputError: Two-pass scoring requested for a reference
            without a fine -> coarse mapping
    """
    scoring = config.scoring
    base = CorrelationScorer(
        quantile=scoring.quantile,
        fine_tune=scoring.fine_tune,
        tune_threshold=scoring.tune_threshold,
        n_top_markers=scoring.n_top_markers,
        n_jobs=scoring.n_jobs,
        batch_size=scoring.batch_size,
    )
    if not scoring.two_pass:
        return base
    if reference is not None and not reference.parents:
        raise InvalidInputError(
            "two_pass scoring needs a reference built with coarse labels",
            stage="scoring",
        )
    return HierarchicalScorer(base=base)


def export_results(
    result: ScoreResult,
    pruning: PruningResult,
    output_dir: Union[str, Path],
    config: Optional[TransferConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Path]:
    """Write score, assignment and diagnostic tables to output_dir.

    Returns:
        Mapping of table name to written path
    """
    # io imports core; import lazily to avoid circular import
    from ...io.checkpoint import save_checkpoint
    from ...io.loaders import ensure_output_dir, write_dataframe

    config = config or TransferConfig()
    logger = logger or logging.getLogger(__name__)
    output_dir = ensure_output_dir(output_dir)

    written: Dict[str, Path] = {}

    def _write(name: str, df: pd.DataFrame, index: bool = False) -> None:
        path = write_dataframe(df, output_dir / f"{name}.csv", index=index)
        written[name] = path
        logger.info("Wrote %s", path.name)

    _write("scores", result.scores, index=True)
    assignments = TransferResult(scores=result, pruning=pruning).assignments()
    _write("assignments", assignments, index=True)
    _write("label_thresholds", summarize_deltas(pruning))
    _write("delta_distribution", delta_distribution(pruning))
    _write("label_summary", label_summary(pruning))

    matrix, annotations = score_heatmap_matrix(
        result, pruning, normalize=config.output.normalize_heatmap
    )
    _write("heatmap_matrix", matrix, index=True)
    _write("heatmap_annotations", annotations, index=True)

    if config.output.write_checkpoint:
        written["checkpoint"] = save_checkpoint(result, output_dir / "checkpoint")

    return written


class TransferEngine:
    """Reference-based label transfer for query cells.

    Example:
        >>> engine = TransferEngine(TransferConfig.from_yaml("transfer.yaml"))
        >>> reference = engine.build_reference(ref_adata, label_key="cell_type")
        >>> result = engine.run(reference, query_adata, output_dir=Path("out/"))
        >>> engine.annotate(query_adata, result)
    """

    def __init__(
        self,
        config: Optional[TransferConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or TransferConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build_reference(
        self,
        source: Any,
        label_key: Optional[str] = None,
        labels: Optional[Sequence[Any]] = None,
        coarse_key: Optional[str] = None,
        coarse_labels: Optional[Sequence[Any]] = None,
        parents: Optional[Mapping[str, str]] = None,
    ) -> ReferenceProfile:
        """Build a reference profile from AnnData, a DataFrame or a matrix.

        For AnnData, labels are read from ``obs[label_key]`` and the optional
        coarse labels from ``obs[coarse_key]``; other inputs need explicit
        ``labels``.
        """
        ref_config = self.config.reference
        label_key = label_key or ref_config.label_key
        coarse_key = coarse_key or ref_config.coarse_key

        if isinstance(source, ad.AnnData) and labels is None:
            if label_key not in source.obs.columns:
                raise InvalidInputError(
                    f"Label column '{label_key}' not found in reference obs",
                    stage="reference",
                )
            labels = source.obs[label_key]
            if coarse_key is not None and coarse_labels is None:
                if coarse_key not in source.obs.columns:
                    raise InvalidInputError(
                        f"Coarse label column '{coarse_key}' not found in reference obs",
                        stage="reference",
                    )
                coarse_labels = source.obs[coarse_key]
        if labels is None:
            raise InvalidInputError(
                "Reference labels are required for non-AnnData input", stage="reference"
            )

        if parents is None and coarse_labels is not None:
            parents = derive_parents(labels, coarse_labels)

        matrix = as_expression_matrix(source, layer=ref_config.layer)
        return build_reference(
            matrix,
            labels,
            parents=parents,
            config=ref_config,
            logger=self.logger,
        )

    def score(self, reference: ReferenceProfile, query: Any) -> ScoreResult:
        """Score query cells against every reference label."""
        matrix = as_expression_matrix(query, layer=self.config.scoring.query_layer)
        scorer = make_scorer(self.config, reference)
        return scorer.score(reference, matrix, logger=self.logger)

    def prune(self, result: ScoreResult) -> PruningResult:
        """Flag low-confidence assignments of a score result."""
        return prune_scores(result, self.config.pruning, logger=self.logger)

    def run(
        self,
        reference: ReferenceProfile,
        query: Any,
        output_dir: Optional[Union[str, Path]] = None,
    ) -> TransferResult:
        """Score, prune and optionally export.

        Args:
            reference: Reference profile
            query: Query AnnData, genes x cells DataFrame or ExpressionMatrix
            output_dir: Where to write tables and the checkpoint (None = don't write)

        Returns:
            TransferResult with scores, pruning and per-stage timings

        Raises:
            TransferError: On invalid input, logged with the failing stage
        """
        self.logger.info("=" * 70)
        self.logger.info("LABEL TRANSFER ENGINE")
        self.logger.info("=" * 70)
        self.logger.info("Reference: %d labels, %d samples", reference.n_labels, reference.n_samples)
        self.logger.info(
            "Scoring: quantile=%.2f, fine_tune=%s, two_pass=%s, n_jobs=%d",
            self.config.scoring.quantile,
            self.config.scoring.fine_tune,
            self.config.scoring.two_pass,
            self.config.scoring.n_jobs,
        )
        self.logger.info("")

        timings: Dict[str, float] = {}
        try:
            self.logger.info("Phase 1: Scoring query cells...")
            start = time.time()
            scores = self.score(reference, query)
            timings["scoring"] = time.time() - start

            self.logger.info("Phase 2: Pruning low-confidence labels...")
            start = time.time()
            pruning = self.prune(scores)
            timings["pruning"] = time.time() - start
        except TransferError as exc:
            self.logger.error("Transfer failed at stage '%s': %s", exc.stage, exc.args[0])
            raise

        result = TransferResult(scores=scores, pruning=pruning, timings=timings)

        if output_dir is not None:
            from ...io.logging import log_yaml

            self.logger.info("Phase 3: Exporting results...")
            start = time.time()
            output_dir = Path(output_dir)
            result.output_files = export_results(
                scores, pruning, output_dir, config=self.config, logger=self.logger
            )
            timings["export"] = time.time() - start
            log_yaml(output_dir / "run_record.yaml", self._run_record(reference, result))

        self.logger.info("")
        self.logger.info("Transfer complete!")
        self.logger.info(
            "  Cells: %d, Labels used: %d, Pruned: %d",
            len(scores.scores),
            int(pruning.pruned_labels.dropna().nunique()),
            pruning.n_pruned,
        )
        return result

    def annotate(
        self,
        adata: "ad.AnnData",
        result: TransferResult,
    ) -> None:
        """Write transferred labels and pruning flags into ``adata``."""
        annotate_obs(
            adata,
            result.scores,
            result.pruning,
            label_col=self.config.output.label_col,
            logger=self.logger,
        )

    def _run_record(self, reference: ReferenceProfile, result: TransferResult) -> Dict[str, Any]:
        return {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "reference": reference.summary(),
            "scorer": result.scores.scorer,
            "params": dict(result.scores.params),
            "config": self.config.to_dict(),
            "n_cells": len(result.scores.scores),
            "n_pruned": result.pruning.n_pruned,
            "timings": {k: round(v, 3) for k, v in result.timings.items()},
            "outputs": {k: str(v) for k, v in result.output_files.items()},
        }
