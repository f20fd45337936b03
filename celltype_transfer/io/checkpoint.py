"""Checkpoints for score results and cached reference profiles.

A score checkpoint is a directory holding ``scores.csv`` (cells x labels),
``labels.csv`` (arg-max and fine-tuned labels) and ``checkpoint.yaml``
(scorer name, parameters, gene lists and label order). A two-pass result
stores its first pass in a ``coarse/`` subdirectory of the same layout.
Pruning can be re-run from a checkpoint without rescoring.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import joblib
import numpy as np
import pandas as pd
import yaml

from ..core.transfer.reference import ReferenceProfile
from ..core.transfer.scoring import ScoreResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

SCORES_FILE = "scores.csv"
LABELS_FILE = "labels.csv"
METADATA_FILE = "checkpoint.yaml"
COARSE_DIR = "coarse"
CHECKPOINT_VERSION = 1


def _labels_to_column(labels: pd.Series) -> pd.Series:
    return labels.map(lambda v: v if isinstance(v, str) else "")


def _column_to_labels(column: pd.Series, name: str) -> pd.Series:
    values = [v if v != "" else None for v in column.tolist()]
    return pd.Series(values, index=column.index, name=name, dtype=object)


def save_checkpoint(result: ScoreResult, directory: PathLike) -> Path:
    """Write a score result to directory.

    Parameters
    ----------
    result : ScoreResult
        Result to persist.
    directory : PathLike
        Output directory (created if missing).

    Returns
    -------
    Path
        The checkpoint directory.
    """
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)

    scores = result.scores.copy()
    scores.index = scores.index.astype(str)
    scores.to_csv(out_dir / SCORES_FILE, index=True, index_label="cell_id", float_format="%.17g")

    labels = pd.DataFrame(index=scores.index)
    labels["assignment"] = _labels_to_column(result.assignment).to_numpy()
    if result.tuned is not None:
        labels["tuned"] = _labels_to_column(result.tuned).to_numpy()
    labels.to_csv(out_dir / LABELS_FILE, index=True, index_label="cell_id")

    metadata = {
        "version": CHECKPOINT_VERSION,
        "scorer": result.scorer,
        "params": dict(result.params),
        "label_order": list(result.label_order),
        "has_tuned": result.tuned is not None,
        "has_coarse": result.coarse is not None,
        "common_genes": list(result.common_genes),
        "marker_genes": list(result.marker_genes),
    }
    with open(out_dir / METADATA_FILE, "w") as f:
        yaml.safe_dump(metadata, f, sort_keys=False)

    if result.coarse is not None:
        save_checkpoint(result.coarse, out_dir / COARSE_DIR)

    logger.info("Saved checkpoint for %d cells to %s", len(scores), out_dir)
    return out_dir


def load_checkpoint(directory: PathLike) -> ScoreResult:
    """Read a score result written by ``save_checkpoint``.

    Raises
    ------
    FileNotFoundError
        If the directory or any checkpoint file is missing.
    """
    in_dir = Path(directory)
    for name in (SCORES_FILE, LABELS_FILE, METADATA_FILE):
        if not (in_dir / name).exists():
            raise FileNotFoundError(f"Checkpoint file not found: {in_dir / name}")

    with open(in_dir / METADATA_FILE) as f:
        metadata = yaml.safe_load(f) or {}

    scores = pd.read_csv(
        in_dir / SCORES_FILE,
        index_col="cell_id",
        dtype={"cell_id": str},
        float_precision="round_trip",
    )
    label_order = [str(label) for label in metadata.get("label_order", scores.columns)]
    scores.columns = pd.Index(label_order, name="label")
    scores.index = pd.Index(scores.index.astype(str), name="cell_id")
    scores = scores.astype(np.float64)

    labels = pd.read_csv(
        in_dir / LABELS_FILE,
        index_col="cell_id",
        dtype=str,
        keep_default_na=False,
    )
    labels.index = pd.Index(labels.index.astype(str), name="cell_id")
    labels = labels.reindex(scores.index)

    tuned = None
    if metadata.get("has_tuned") and "tuned" in labels.columns:
        tuned = _column_to_labels(labels["tuned"], "tuned")

    coarse: Optional[ScoreResult] = None
    if metadata.get("has_coarse"):
        coarse = load_checkpoint(in_dir / COARSE_DIR)

    result = ScoreResult(
        scores=scores,
        assignment=_column_to_labels(labels["assignment"], "assignment"),
        tuned=tuned,
        common_genes=tuple(metadata.get("common_genes") or ()),
        marker_genes=tuple(metadata.get("marker_genes") or ()),
        scorer=metadata.get("scorer", "correlation"),
        coarse=coarse,
        params=dict(metadata.get("params") or {}),
    )
    logger.info("Loaded checkpoint for %d cells from %s", len(scores), in_dir)
    return result


def save_reference(profile: ReferenceProfile, path: PathLike) -> Path:
    """Cache a reference profile with joblib."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(profile, out_path)
    logger.info(
        "Saved reference (%d genes, %d labels) to %s",
        len(profile.genes),
        profile.n_labels,
        out_path,
    )
    return out_path


def load_reference(path: PathLike) -> ReferenceProfile:
    """Load a reference profile cached by ``save_reference``.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    TypeError
        If the file holds something other than a reference profile.
    """
    in_path = Path(path)
    if not in_path.exists():
        raise FileNotFoundError(f"Reference file not found: {in_path}")
    profile = joblib.load(in_path)
    if not isinstance(profile, ReferenceProfile):
        raise TypeError(f"{in_path} does not contain a reference profile")
    return profile
