"""Two-pass (coarse -> fine) scoring.

Pass 1 scores query cells against coarse labels (the reference collapsed
through its fine -> coarse mapping). Pass 2 scores each group of cells that
received the same coarse call against the fine labels under that coarse
label only. Fine scores outside a cell's coarse group are left as NaN.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import numpy as np
import pandas as pd

from ...errors import InvalidInputError
from .matrix import ExpressionMatrix
from .reference import ReferenceProfile
from .scoring import CorrelationScorer, Scorer, ScoreResult, assign_best_labels


class HierarchicalScorer(Scorer):
    """Wrap a base scorer into a coarse-then-fine two-pass scorer.

    Args:
        base: Scorer used for both passes (default: CorrelationScorer())
        parents: Fine -> coarse mapping; defaults to the reference's own
    """

    name = "hierarchical"

    def __init__(
        self,
        base: Optional[Scorer] = None,
        parents: Optional[Mapping[str, str]] = None,
    ):
        self.base = base or CorrelationScorer()
        self.parents = dict(parents) if parents is not None else None

    def params(self) -> Dict[str, Any]:
        params = {"base": self.base.name}
        params.update(self.base.params())
        return params

    def score(
        self,
        reference: ReferenceProfile,
        query: ExpressionMatrix,
        logger: Optional[logging.Logger] = None,
    ) -> ScoreResult:
        logger = logger or logging.getLogger(__name__)
        parents = self.parents or reference.parents
        if not parents:
            raise InvalidInputError(
                "Two-pass scoring needs a fine -> coarse label mapping", stage="scoring"
            )

        coarse_reference = reference.coarsen(parents)
        logger.info(
            "Pass 1: scoring %d cells against %d coarse labels",
            query.n_cells,
            coarse_reference.n_labels,
        )
        coarse = self.base.score(coarse_reference, query, logger=logger)
        coarse_calls = coarse.labels

        index = pd.Index(query.cells, name="cell_id")
        columns = pd.Index(reference.labels, name="label")
        values = np.full((query.n_cells, reference.n_labels), np.nan)
        tuned = pd.Series(None, index=index, name="tuned", dtype=object)
        any_tuned = False
        marker_genes = set()

        row_position = {cell: idx for idx, cell in enumerate(query.cells)}
        col_position = {label: idx for idx, label in enumerate(reference.labels)}

        for coarse_label in coarse_reference.labels:
            cells = coarse_calls.index[coarse_calls == coarse_label].tolist()
            if not cells:
                continue
            fine_labels = [label for label in reference.labels if parents[label] == coarse_label]
            logger.info(
                "Pass 2: %s -> %d cells against %d fine labels",
                coarse_label,
                len(cells),
                len(fine_labels),
            )
            sub = self.base.score(
                reference.subset_labels(fine_labels),
                query.subset_cells(cells),
                logger=logger,
            )
            rows = [row_position[cell] for cell in sub.scores.index]
            cols = [col_position[label] for label in sub.scores.columns]
            values[np.ix_(rows, cols)] = sub.scores.to_numpy(dtype=float)
            if sub.tuned is not None:
                any_tuned = True
            tuned.loc[sub.scores.index] = sub.labels.to_numpy()
            marker_genes.update(sub.marker_genes)

        scores = pd.DataFrame(values, index=index, columns=columns)
        assignment = assign_best_labels(scores)

        return ScoreResult(
            scores=scores,
            assignment=assignment,
            tuned=tuned if any_tuned else None,
            common_genes=coarse.common_genes,
            marker_genes=tuple(g for g in reference.genes if g in marker_genes),
            scorer=self.name,
            coarse=coarse,
            params=self.params(),
        )
