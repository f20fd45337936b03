"""Reference profile building and marker selection.

The reference profile keeps the transformed reference samples grouped by
label together with per-label median expression. Pairwise marker genes are
derived from the medians on demand, restricted to whichever gene universe
the query allows, so genes missing from the query never shape the marker
lists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import EmptyLabelError, InvalidInputError
from .config import ReferenceConfig
from .matrix import ExpressionMatrix, MatrixLike

# Markers per label pair for a two-label reference; shrinks as labels grow.
DEFAULT_MARKER_BASE = 500


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def _freeze_samples(samples: MatrixLike) -> MatrixLike:
    if sparse.issparse(samples):
        samples = sparse.csr_matrix(samples, dtype=np.float64)
        # Canonical format so later reads never sort in place
        samples.sum_duplicates()
        for array in (samples.data, samples.indices, samples.indptr):
            array.setflags(write=False)
        return samples
    return _freeze(np.asarray(samples, dtype=np.float64))


def transform_expression(
    values: MatrixLike,
    transform: str = "log1p",
    target_sum: Optional[float] = None,
) -> MatrixLike:
    """Return a transformed copy of a genes x samples matrix.

    Args:
        values: Dense or sparse expression matrix (genes x samples)
        transform: ``log1p`` or ``none``
        target_sum: If set, scale every sample to this total first

    Returns:
        Transformed matrix of the same kind (dense or CSR)
    """
    if sparse.issparse(values):
        out = sparse.csr_matrix(values, dtype=np.float64, copy=True)
        if target_sum is not None:
            totals = np.asarray(out.sum(axis=0)).ravel()
            scale = np.zeros_like(totals)
            np.divide(target_sum, totals, out=scale, where=totals > 0)
            out = sparse.csr_matrix(out @ sparse.diags(scale))
        if transform == "log1p":
            out.data = np.log1p(out.data)
        return out

    out = np.array(values, dtype=np.float64)
    if target_sum is not None:
        totals = out.sum(axis=0)
        scale = np.zeros_like(totals)
        np.divide(target_sum, totals, out=scale, where=totals > 0)
        out = out * scale[np.newaxis, :]
    if transform == "log1p":
        out = np.log1p(out)
    return out


def _column_medians(values: MatrixLike, codes: np.ndarray, n_labels: int) -> np.ndarray:
    """Per-gene median over the samples of each label (genes x labels)."""
    medians = np.zeros((values.shape[0], n_labels), dtype=np.float64)
    for code in range(n_labels):
        block = values[:, np.flatnonzero(codes == code)]
        if sparse.issparse(block):
            block = block.toarray()
        medians[:, code] = np.median(block, axis=1)
    return medians


@dataclass(frozen=True)
class ReferenceProfile:
    """Immutable per-label reference index.

    Attributes:
        genes: Reference gene identifiers (row order of ``samples``)
        labels: Ordered labels; position defines tie-break priority
        samples: Transformed reference expression (genes x samples)
        sample_codes: Label position for every sample column
        medians: Per-label median expression (genes x labels)
        parents: Optional fine label -> coarse label mapping
        transform: Transform applied to ``samples``
    """

    genes: Tuple[str, ...]
    labels: Tuple[str, ...]
    samples: MatrixLike
    sample_codes: np.ndarray
    medians: np.ndarray
    parents: Optional[Dict[str, str]] = None
    transform: str = "log1p"
    sample_names: Tuple[str, ...] = field(default=())

    @property
    def n_labels(self) -> int:
        return len(self.labels)

    @property
    def n_samples(self) -> int:
        return int(self.sample_codes.size)

    @property
    def gene_index(self) -> Dict[str, int]:
        return {gene: idx for idx, gene in enumerate(self.genes)}

    @property
    def label_counts(self) -> pd.Series:
        """Number of reference samples per label, in label order."""
        counts = np.bincount(self.sample_codes, minlength=self.n_labels)
        return pd.Series(counts, index=pd.Index(self.labels, name="label"), name="n_samples")

    @property
    def label_medians(self) -> pd.DataFrame:
        """Per-label median expression as a genes x labels DataFrame."""
        return pd.DataFrame(
            self.medians,
            index=pd.Index(self.genes, name="gene"),
            columns=pd.Index(self.labels, name="label"),
        )

    @property
    def coarse_labels(self) -> Tuple[str, ...]:
        if not self.parents:
            return ()
        return tuple(sorted(set(self.parents[label] for label in self.labels)))

    def dense_rows(self, rows: Sequence[int], columns: Optional[Sequence[int]] = None) -> np.ndarray:
        """Dense copy of the given gene rows (optionally a subset of samples)."""
        block = self.samples[np.asarray(rows, dtype=int), :]
        if columns is not None:
            block = block[:, np.asarray(columns, dtype=int)]
        if sparse.issparse(block):
            return block.toarray()
        return np.array(block, dtype=np.float64)

    def subset_labels(self, labels: Sequence[str]) -> "ReferenceProfile":
        """Profile restricted to ``labels`` (in the given order)."""
        unknown = [label for label in labels if label not in self.labels]
        if unknown:
            raise InvalidInputError(f"Labels not in reference: {unknown}", stage="reference")
        position = {label: idx for idx, label in enumerate(self.labels)}
        keep_codes = [position[label] for label in labels]
        columns = np.flatnonzero(np.isin(self.sample_codes, keep_codes))
        sample_labels = np.asarray(self.labels, dtype=object)[self.sample_codes[columns]]
        parents = None
        if self.parents:
            parents = {label: self.parents[label] for label in labels}
        return _assemble_profile(
            genes=self.genes,
            samples=self.samples[:, columns],
            sample_labels=sample_labels,
            label_order=tuple(labels),
            parents=parents,
            transform=self.transform,
            sample_names=tuple(self.sample_names[idx] for idx in columns)
            if self.sample_names else (),
        )

    def coarsen(self, parents: Optional[Mapping[str, str]] = None) -> "ReferenceProfile":
        """Profile whose labels are the coarse parents of the current labels."""
        parents = dict(parents) if parents is not None else self.parents
        if not parents:
            raise InvalidInputError(
                "No coarse label mapping available for this reference", stage="reference"
            )
        _check_parents(self.labels, parents)
        sample_labels = np.asarray(
            [parents[self.labels[code]] for code in self.sample_codes], dtype=object
        )
        return _assemble_profile(
            genes=self.genes,
            samples=self.samples,
            sample_labels=sample_labels,
            label_order=tuple(sorted(set(sample_labels))),
            parents=None,
            transform=self.transform,
            sample_names=self.sample_names,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "n_genes": len(self.genes),
            "n_samples": self.n_samples,
            "n_labels": self.n_labels,
            "labels": list(self.labels),
            "two_level": bool(self.parents),
            "transform": self.transform,
        }


def _check_parents(labels: Sequence[str], parents: Mapping[str, str]) -> None:
    missing = [label for label in labels if label not in parents or pd.isna(parents[label])]
    if missing:
        raise InvalidInputError(
            f"Coarse label mapping missing for labels: {missing}", stage="reference"
        )


def _assemble_profile(
    genes: Tuple[str, ...],
    samples: MatrixLike,
    sample_labels: np.ndarray,
    label_order: Tuple[str, ...],
    parents: Optional[Dict[str, str]],
    transform: str,
    sample_names: Tuple[str, ...] = (),
) -> ReferenceProfile:
    position = {label: idx for idx, label in enumerate(label_order)}
    codes = np.asarray([position[label] for label in sample_labels], dtype=np.int64)
    medians = _column_medians(samples, codes, len(label_order))
    samples = _freeze_samples(samples)
    return ReferenceProfile(
        genes=tuple(genes),
        labels=tuple(label_order),
        samples=samples,
        sample_codes=_freeze(codes),
        medians=_freeze(medians),
        parents=dict(parents) if parents else None,
        transform=transform,
        sample_names=tuple(sample_names),
    )


def _resolve_labels(
    labels: Any,
    n_samples: int,
    label_order: Optional[Sequence[str]],
) -> Tuple[np.ndarray, Tuple[str, ...]]:
    """Validate a label vector and decide the label order."""
    if isinstance(labels, pd.Series):
        labels = labels.array
    categories: Optional[List[str]] = None
    if isinstance(labels, pd.Categorical) or isinstance(
        getattr(labels, "dtype", None), pd.CategoricalDtype
    ):
        categorical = pd.Categorical(labels)
        categories = [str(c) for c in categorical.categories]
        values = np.asarray(categorical.astype(object))
    else:
        values = np.asarray(list(labels), dtype=object)

    if values.shape[0] != n_samples:
        raise InvalidInputError(
            f"Label vector has {values.shape[0]} entries but the reference "
            f"matrix has {n_samples} samples",
            stage="reference",
        )

    missing = np.asarray([pd.isna(v) or str(v).strip() == "" for v in values], dtype=bool)
    if missing.any():
        raise InvalidInputError(
            f"{int(missing.sum())} reference samples have no label", stage="reference"
        )
    values = np.asarray([str(v) for v in values], dtype=object)

    if label_order is not None:
        order = tuple(str(label) for label in label_order)
        if len(set(order)) != len(order):
            raise InvalidInputError("label_order contains duplicates", stage="reference")
        unexpected = sorted(set(values) - set(order))
        if unexpected:
            raise InvalidInputError(
                f"Labels not listed in label_order: {unexpected}", stage="reference"
            )
    elif categories is not None:
        order = tuple(categories)
    else:
        order = tuple(sorted(set(values)))
    return values, order


def derive_parents(fine: Sequence[Any], coarse: Sequence[Any]) -> Dict[str, str]:
    """Build a fine -> coarse mapping from two aligned label vectors.

    Raises:
        InvalidInputError: If a fine label maps to more than one coarse label
    """
    pairs = pd.DataFrame({"fine": list(fine), "coarse": list(coarse)}).dropna()
    pairs = pairs.astype(str).drop_duplicates()
    conflicts = pairs["fine"][pairs["fine"].duplicated()].unique().tolist()
    if conflicts:
        raise InvalidInputError(
            f"Fine labels assigned to several coarse labels: {conflicts}",
            stage="reference",
        )
    return dict(zip(pairs["fine"], pairs["coarse"]))


def build_reference(
    matrix: ExpressionMatrix,
    labels: Any,
    *,
    label_order: Optional[Sequence[str]] = None,
    parents: Optional[Mapping[str, str]] = None,
    config: Optional[ReferenceConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> ReferenceProfile:
    """Build an immutable reference profile from a labeled matrix.

    Args:
        matrix: Reference expression (genes x samples)
        labels: One label per reference sample. A categorical fixes the
            label order to its categories; otherwise labels are sorted.
        label_order: Explicit label order (overrides the above)
        parents: Optional fine -> coarse label mapping for two-pass scoring
        config: Reference configuration
        logger: Logger instance

    Returns:
        ReferenceProfile with exactly one entry per distinct label

    Raises:
        InvalidInputError: Label/sample count mismatch, unlabeled samples,
            or labels below ``min_samples_per_label``
        EmptyLabelError: A declared label has no samples
    """
    config = config or ReferenceConfig()
    logger = logger or logging.getLogger(__name__)

    values, order = _resolve_labels(labels, matrix.n_cells, label_order)
    counts = pd.Series(values).value_counts()

    empty = [label for label in order if counts.get(label, 0) == 0]
    if empty:
        raise EmptyLabelError(empty, stage="reference")

    too_small = {
        label: int(counts[label])
        for label in order
        if counts[label] < config.min_samples_per_label
    }
    if too_small:
        raise InvalidInputError(
            f"Labels with fewer than {config.min_samples_per_label} samples: {too_small}",
            stage="reference",
        )

    if parents is not None:
        parents = {str(k): str(v) for k, v in parents.items()}
        _check_parents(order, parents)
        parents = {label: parents[label] for label in order}

    logger.info(
        "Building reference: %d genes, %d samples, %d labels (transform=%s)",
        matrix.n_genes,
        matrix.n_cells,
        len(order),
        config.transform,
    )
    samples = transform_expression(
        matrix.values, transform=config.transform, target_sum=config.target_sum
    )
    sample_names = matrix.cells

    if config.aggregate:
        position = {label: idx for idx, label in enumerate(order)}
        codes = np.asarray([position[v] for v in values], dtype=np.int64)
        samples = _column_medians(samples, codes, len(order))
        values = np.asarray(order, dtype=object)
        sample_names = tuple(f"{label}__median" for label in order)
        logger.info("Aggregated reference to one median profile per label")

    profile = _assemble_profile(
        genes=matrix.genes,
        samples=samples,
        sample_labels=values,
        label_order=order,
        parents=parents,
        transform=config.transform,
        sample_names=sample_names,
    )
    for label, n in profile.label_counts.items():
        logger.debug("  %s: %d samples", label, n)
    return profile


def default_marker_count(n_labels: int) -> int:
    """Markers kept per label pair: ``500 * (2/3) ** log2(n_labels)``."""
    if n_labels < 2:
        return 0
    return int(round(DEFAULT_MARKER_BASE * (2.0 / 3.0) ** np.log2(n_labels)))


@dataclass(frozen=True)
class MarkerTable:
    """Pairwise marker genes: genes up in ``first`` relative to ``second``.

    Attributes:
        labels: Label order of the profile the table was built from
        genes: Gene universe (reference order)
        pairs: (first, second) -> marker genes, strongest first
        n_top: Maximum markers per pair
    """

    labels: Tuple[str, ...]
    genes: Tuple[str, ...]
    pairs: Mapping[Tuple[str, str], Tuple[str, ...]]
    n_top: int

    def markers(self, first: str, second: str) -> Tuple[str, ...]:
        return self.pairs.get((first, second), ())

    def union(self, labels: Optional[Sequence[str]] = None) -> Tuple[str, ...]:
        """Markers of every pair among ``labels``, in universe order."""
        subset = set(self.labels if labels is None else labels)
        selected = set()
        for (first, second), genes in self.pairs.items():
            if first in subset and second in subset:
                selected.update(genes)
        return tuple(gene for gene in self.genes if gene in selected)

    def to_dataframe(self) -> pd.DataFrame:
        records = [
            {"label": first, "versus": second, "rank": rank, "gene": gene}
            for (first, second), genes in self.pairs.items()
            for rank, gene in enumerate(genes, start=1)
        ]
        return pd.DataFrame.from_records(
            records, columns=["label", "versus", "rank", "gene"]
        )


def select_markers(
    profile: ReferenceProfile,
    genes: Optional[Sequence[str]] = None,
    n_top: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> MarkerTable:
    """Select pairwise marker genes from per-label medians.

    For every ordered pair of labels (a, b), genes are ranked by
    ``median[a] - median[b]`` (ties keep reference gene order) and the top
    ``n_top`` genes with a strictly positive difference are kept.

    Args:
        profile: Reference profile
        genes: Gene universe (default: all reference genes)
        n_top: Markers per pair (default: ``default_marker_count``)
        logger: Logger instance

    Returns:
        MarkerTable over the given universe
    """
    logger = logger or logging.getLogger(__name__)
    if genes is None:
        rows = np.arange(len(profile.genes))
    else:
        wanted = set(genes)
        rows = np.asarray(
            [idx for idx, gene in enumerate(profile.genes) if gene in wanted], dtype=int
        )
    if rows.size == 0:
        raise InvalidInputError("Marker selection needs a non-empty gene universe", stage="scoring")

    universe = tuple(profile.genes[idx] for idx in rows)
    medians = profile.medians[rows, :]
    if n_top is None:
        n_top = default_marker_count(profile.n_labels)

    pairs: Dict[Tuple[str, str], Tuple[str, ...]] = {}
    for a, first in enumerate(profile.labels):
        for b, second in enumerate(profile.labels):
            if a == b:
                continue
            diff = medians[:, a] - medians[:, b]
            order = np.argsort(-diff, kind="stable")
            order = order[diff[order] > 0][:n_top]
            pairs[(first, second)] = tuple(universe[idx] for idx in order)

    table = MarkerTable(labels=profile.labels, genes=universe, pairs=pairs, n_top=n_top)
    logger.debug(
        "Selected markers for %d label pairs (n_top=%d, %d genes in union)",
        len(pairs),
        n_top,
        len(table.union()),
    )
    return table
