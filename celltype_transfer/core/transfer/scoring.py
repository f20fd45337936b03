"""Scoring query cells against reference labels.

The default scorer computes, for every query cell, the Spearman correlation
with every reference sample over pairwise marker genes and summarizes each
label by a high quantile of its samples' correlations. Near-tied labels can
be fine-tuned by rescoring on the markers that separate them.

Cells are scored in independent batches; with ``n_jobs > 1`` batches run in
joblib worker processes and are gathered in their original order.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import rankdata

from ...errors import InsufficientOverlapError
from .matrix import ExpressionMatrix
from .reference import ReferenceProfile, select_markers


@dataclass(frozen=True)
class ScoreResult:
    """Score matrix and label assignment for one query batch.

    Fields cannot be reassigned, but the tables are ordinary pandas
    objects; copy them before editing.

    Attributes:
        scores: Cells x labels score matrix; values are comparable within a
            row only
        assignment: Arg-max label per cell (first label in column order on
            ties, NaN scores never win)
        tuned: Fine-tuned label per cell, if fine-tuning ran
        common_genes: Genes shared by reference and query
        marker_genes: Genes used for the initial scores
        scorer: Name of the scorer that produced the result
        coarse: First-pass result for two-pass scoring
        params: Scorer parameters
    """

    scores: pd.DataFrame
    assignment: pd.Series
    tuned: Optional[pd.Series] = None
    common_genes: Tuple[str, ...] = ()
    marker_genes: Tuple[str, ...] = ()
    scorer: str = "correlation"
    coarse: Optional["ScoreResult"] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def labels(self) -> pd.Series:
        """Final labels: fine-tuned when available, else the arg-max."""
        return self.tuned if self.tuned is not None else self.assignment

    @property
    def label_order(self) -> Tuple[str, ...]:
        return tuple(self.scores.columns)

    @property
    def cells(self) -> Tuple[str, ...]:
        return tuple(self.scores.index)

    def to_frame(self) -> pd.DataFrame:
        """Per-cell label table (arg-max, tuned, final, top score)."""
        frame = pd.DataFrame(index=self.scores.index)
        frame["assignment"] = self.assignment
        if self.tuned is not None:
            frame["tuned"] = self.tuned
        frame["label"] = self.labels
        values = self.scores.to_numpy(dtype=float)
        frame["top_score"] = _row_max(values)
        return frame


def _row_max(values: np.ndarray) -> np.ndarray:
    filled = np.where(np.isfinite(values), values, -np.inf)
    top = filled.max(axis=1) if values.shape[1] else np.full(values.shape[0], -np.inf)
    return np.where(np.isfinite(top), top, np.nan)


def assign_best_labels(scores: pd.DataFrame) -> pd.Series:
    """Arg-max label per row.

    Ties go to the first label in column order. NaN scores are ignored;
    rows with no finite score get no label (None).
    """
    values = scores.to_numpy(dtype=float)
    labels = np.empty(values.shape[0], dtype=object)
    if values.shape[1]:
        filled = np.where(np.isfinite(values), values, -np.inf)
        labels[:] = np.asarray(scores.columns, dtype=object)[np.argmax(filled, axis=1)]
        labels[~np.isfinite(values).any(axis=1)] = None
    return pd.Series(labels, index=scores.index, name="assignment", dtype=object)


def reconcile_genes(
    reference_genes: Sequence[str],
    query_genes: Sequence[str],
) -> Tuple[str, ...]:
    """Genes present in both inputs, in reference order.

    Raises:
        InsufficientOverlapError: If no gene is shared
    """
    query_set = set(query_genes)
    common = tuple(g for g in reference_genes if g in query_set)
    if not common:
        reference_set = set(reference_genes)
        raise InsufficientOverlapError(
            missing_in_query=[g for g in reference_genes if g not in query_set],
            missing_in_reference=[g for g in query_genes if g not in reference_set],
        )
    return common


def rank_scale(matrix: np.ndarray) -> np.ndarray:
    """Rank each column, center and scale it to unit norm.

    The dot product of two scaled columns is their Spearman correlation.
    Constant columns become all zeros, so they correlate 0 with anything.
    """
    ranks = rankdata(matrix, axis=0)
    ranks -= ranks.mean(axis=0, keepdims=True)
    norms = np.sqrt(np.sum(ranks * ranks, axis=0))
    scaled = np.zeros_like(ranks)
    np.divide(ranks, norms, out=scaled, where=norms > 0)
    return scaled


def _label_quantiles(
    corr: np.ndarray,
    codes: np.ndarray,
    label_codes: Sequence[int],
    quantile: float,
) -> np.ndarray:
    """Quantile of sample correlations per label (labels x cells)."""
    out = np.empty((len(label_codes), corr.shape[1]), dtype=np.float64)
    for pos, code in enumerate(label_codes):
        out[pos] = np.quantile(corr[codes == code], quantile, axis=0)
    return out


def _pair_genes(pair_index: Dict[Tuple[int, int], np.ndarray], candidates: np.ndarray) -> np.ndarray:
    chunks = [
        pair_index[(a, b)]
        for a in candidates
        for b in candidates
        if a != b and (a, b) in pair_index
    ]
    if not chunks:
        return np.empty(0, dtype=int)
    return np.unique(np.concatenate(chunks))


def _fine_tune_cell(
    query_values: np.ndarray,
    scores_row: np.ndarray,
    ref_values: np.ndarray,
    codes: np.ndarray,
    pair_index: Dict[Tuple[int, int], np.ndarray],
    quantile: float,
    threshold: float,
    cache: Dict[Tuple[int, ...], Tuple[np.ndarray, np.ndarray, np.ndarray]],
) -> int:
    """Iteratively rescore near-tied labels on their own markers.

    Returns the position of the winning label.
    """
    candidates = np.flatnonzero(scores_row >= scores_row.max() - threshold)
    best = int(np.argmax(scores_row))

    while candidates.size > 1:
        key = tuple(int(c) for c in candidates)
        if key not in cache:
            genes = _pair_genes(pair_index, candidates)
            columns = np.flatnonzero(np.isin(codes, candidates))
            ref_scaled = rank_scale(ref_values[np.ix_(genes, columns)]) if genes.size else None
            cache[key] = (genes, ref_scaled, codes[columns])
        genes, ref_scaled, sub_codes = cache[key]
        if genes.size == 0:
            break

        query_scaled = rank_scale(query_values[genes, np.newaxis])
        corr = ref_scaled.T @ query_scaled
        new_scores = _label_quantiles(corr, sub_codes, candidates, quantile)[:, 0]

        best = int(candidates[np.argmax(new_scores)])
        keep = candidates[new_scores >= new_scores.max() - threshold]
        if keep.size == candidates.size:
            break
        candidates = keep

    return int(candidates[0]) if candidates.size == 1 else best


def _score_cell_batch(
    query_block: np.ndarray,
    ref_scaled: np.ndarray,
    ref_values: np.ndarray,
    codes: np.ndarray,
    n_labels: int,
    pair_index: Dict[Tuple[int, int], np.ndarray],
    quantile: float,
    fine_tune: bool,
    tune_threshold: float,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Score one batch of cells (worker function for parallel execution).

    Args:
        query_block: Query expression on marker genes (genes x cells)
        ref_scaled: Rank-scaled reference samples on the same genes
        ref_values: Unscaled reference samples (for fine-tuning)
        codes: Label position of every reference sample
        n_labels: Number of labels
        pair_index: (label, label) -> marker row positions
        quantile: Correlation quantile used as the label score
        fine_tune: Whether to fine-tune near ties
        tune_threshold: Fine-tuning window

    Returns:
        Tuple of (scores cells x labels, tuned label positions or None)
    """
    query_scaled = rank_scale(query_block)
    corr = ref_scaled.T @ query_scaled
    scores = _label_quantiles(corr, codes, range(n_labels), quantile).T

    if not fine_tune or n_labels < 2:
        return scores, None

    cache: Dict[Tuple[int, ...], Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
    tuned = np.empty(scores.shape[0], dtype=np.int64)
    for cell in range(scores.shape[0]):
        tuned[cell] = _fine_tune_cell(
            query_block[:, cell],
            scores[cell],
            ref_values,
            codes,
            pair_index,
            quantile,
            tune_threshold,
            cache,
        )
    return scores, tuned


class Scorer(ABC):
    """Strategy that turns a reference profile and a query into scores.

    Subclasses must return a ``ScoreResult`` whose ``assignment`` is the
    arg-max of each score row; pruning and the diagnostics only rely on that
    contract.
    """

    name = "base"

    @abstractmethod
    def score(
        self,
        reference: ReferenceProfile,
        query: ExpressionMatrix,
        logger: Optional[logging.Logger] = None,
    ) -> ScoreResult:
        """Score every query cell against every reference label."""

    def params(self) -> Dict[str, Any]:
        return {}


class CorrelationScorer(Scorer):
    """Rank-correlation scorer over pairwise marker genes.

    Example:
        >>> scorer = CorrelationScorer(quantile=0.8, n_jobs=4)
        >>> result = scorer.score(reference, query)
        >>> result.scores.head()
    """

    name = "correlation"

    def __init__(
        self,
        quantile: float = 0.8,
        fine_tune: bool = True,
        tune_threshold: float = 0.05,
        n_top_markers: Optional[int] = None,
        n_jobs: int = 1,
        batch_size: int = 500,
    ):
        self.quantile = quantile
        self.fine_tune = fine_tune
        self.tune_threshold = tune_threshold
        self.n_top_markers = n_top_markers
        self.n_jobs = n_jobs
        self.batch_size = batch_size

    def params(self) -> Dict[str, Any]:
        return {
            "quantile": self.quantile,
            "fine_tune": self.fine_tune,
            "tune_threshold": self.tune_threshold,
            "n_top_markers": self.n_top_markers,
            "n_jobs": self.n_jobs,
            "batch_size": self.batch_size,
        }

    def score(
        self,
        reference: ReferenceProfile,
        query: ExpressionMatrix,
        logger: Optional[logging.Logger] = None,
    ) -> ScoreResult:
        logger = logger or logging.getLogger(__name__)
        start_time = time.time()

        common = reconcile_genes(reference.genes, query.genes)
        logger.info(
            "Gene overlap: %d common genes (%d reference-only, %d query-only dropped)",
            len(common),
            len(reference.genes) - len(common),
            query.n_genes - len(common),
        )

        markers = select_markers(
            reference, genes=common, n_top=self.n_top_markers, logger=logger
        )
        marker_genes = markers.union()
        if not marker_genes:
            logger.warning("No pairwise markers found; scoring on all %d common genes", len(common))
            marker_genes = common

        position = {gene: idx for idx, gene in enumerate(marker_genes)}
        label_position = {label: idx for idx, label in enumerate(reference.labels)}
        pair_index = {
            (label_position[first], label_position[second]): np.asarray(
                [position[g] for g in genes], dtype=int
            )
            for (first, second), genes in markers.pairs.items()
            if genes
        }

        ref_gene_index = reference.gene_index
        ref_values = reference.dense_rows([ref_gene_index[g] for g in marker_genes])
        ref_scaled = rank_scale(ref_values)
        codes = np.asarray(reference.sample_codes)

        query_gene_index = query.gene_index
        query_rows = [query_gene_index[g] for g in marker_genes]
        batches = [
            (begin, min(begin + self.batch_size, query.n_cells))
            for begin in range(0, query.n_cells, self.batch_size)
        ]
        logger.info(
            "Scoring %d cells against %d labels on %d marker genes in %d batches",
            query.n_cells,
            reference.n_labels,
            len(marker_genes),
            len(batches),
        )

        def batch_kwargs():
            for begin, end in batches:
                yield dict(
                    query_block=query.dense_block(query_rows, begin, end),
                    ref_scaled=ref_scaled,
                    ref_values=ref_values,
                    codes=codes,
                    n_labels=reference.n_labels,
                    pair_index=pair_index,
                    quantile=self.quantile,
                    fine_tune=self.fine_tune,
                    tune_threshold=self.tune_threshold,
                )

        if self.n_jobs != 1 and len(batches) > 1:
            # Loky backend for process isolation; batches come back in order
            results = Parallel(n_jobs=self.n_jobs, backend="loky")(
                delayed(_score_cell_batch)(**kwargs) for kwargs in batch_kwargs()
            )
        else:
            results = [_score_cell_batch(**kwargs) for kwargs in batch_kwargs()]

        score_parts: List[np.ndarray] = [scores for scores, _ in results]
        values = (
            np.vstack(score_parts)
            if score_parts
            else np.empty((0, reference.n_labels), dtype=np.float64)
        )
        index = pd.Index(query.cells, name="cell_id")
        scores = pd.DataFrame(
            values, index=index, columns=pd.Index(reference.labels, name="label")
        )
        assignment = assign_best_labels(scores)

        tuned = None
        if self.fine_tune and reference.n_labels > 1:
            positions = (
                np.concatenate([part for _, part in results])
                if results
                else np.empty(0, dtype=np.int64)
            )
            tuned = pd.Series(
                np.asarray(reference.labels, dtype=object)[positions],
                index=index,
                name="tuned",
                dtype=object,
            )
            n_changed = int((tuned != assignment).sum())
            logger.info("Fine-tuning changed %d/%d assignments", n_changed, len(tuned))

        logger.info("Scoring complete in %.2f sec", time.time() - start_time)
        return ScoreResult(
            scores=scores,
            assignment=assignment,
            tuned=tuned,
            common_genes=common,
            marker_genes=tuple(marker_genes),
            scorer=self.name,
            params=self.params(),
        )
