"""Cell-level label assignment into AnnData.

This module writes score results and pruning decisions onto the query
AnnData object.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd

import anndata as ad

from ...errors import InvalidInputError
from .pruning import PruningResult
from .scoring import ScoreResult


def annotate_obs(
    adata: "ad.AnnData",
    result: ScoreResult,
    pruning: Optional[PruningResult] = None,
    label_col: str = "transfer_label",
    logger: Optional[logging.Logger] = None,
) -> None:
    """Map transferred labels onto cells in adata.obs.

    Creates new columns in adata.obs:
    - {label_col}: Final label (fine-tuned when available)
    - {label_col}_first: Arg-max label before fine-tuning
    - {label_col}_score: Top score
    - {label_col}_pruned: Final label with pruned cells left empty
    - {label_col}_delta: Delta from the row median
    - {label_col}_is_pruned: Pruning flag

    The score matrix goes to ``obsm[f"{label_col}_scores"]`` with its
    column labels in ``uns[f"{label_col}_labels"]``.

    Args:
        adata: AnnData object to modify in place
        result: Score result covering every cell of ``adata``
        pruning: Optional pruning result
        label_col: Prefix for the output columns
        logger: Optional logger instance
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    obs_names = pd.Index(adata.obs_names.astype(str))
    missing = obs_names.difference(result.scores.index)
    if len(missing):
        raise InvalidInputError(
            f"{len(missing)} cells in AnnData have no scores "
            f"(e.g. {list(missing[:5])})",
            stage="annotation",
        )

    categories = list(result.label_order)
    frame = result.to_frame().reindex(obs_names)

    adata.obs[label_col] = pd.Categorical(frame["label"].to_numpy(), categories=categories)
    adata.obs[f"{label_col}_first"] = pd.Categorical(
        frame["assignment"].to_numpy(), categories=categories
    )
    adata.obs[f"{label_col}_score"] = frame["top_score"].to_numpy(dtype=float)

    if pruning is not None:
        cells = pruning.cells.reindex(obs_names)
        adata.obs[f"{label_col}_pruned"] = pd.Categorical(
            cells["pruned_label"].to_numpy(), categories=categories
        )
        adata.obs[f"{label_col}_delta"] = cells["delta_median"].to_numpy(dtype=float)
        adata.obs[f"{label_col}_is_pruned"] = cells["is_pruned"].fillna(False).to_numpy(dtype=bool)

    adata.obsm[f"{label_col}_scores"] = result.scores.reindex(obs_names).to_numpy(dtype=np.float64)
    adata.uns[f"{label_col}_labels"] = categories

    logger.info(
        "Annotated %d cells with %d unique labels",
        adata.n_obs,
        adata.obs[label_col].nunique(),
    )
