"""Configuration classes for the label-transfer module.

All reference, scoring and pruning parameters are configurable and can be
loaded from YAML.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

TRANSFORMS = ("log1p", "none")


@dataclass
class ReferenceConfig:
    """Configuration for building the reference profile.

    Attributes
    ----------
    label_key : str
        Column in reference ``obs`` holding the (fine) labels
    coarse_key : str, optional
        Column in reference ``obs`` holding coarse labels for two-pass scoring
    layer : str, optional
        Reference layer to read (None = ``X``)
    transform : str
        Per-value transform applied before computing label medians
        (``log1p`` or ``none``)
    target_sum : float, optional
        Library-size scaling applied before the transform. Off by default
        since it makes every gene depend on the full panel.
    aggregate : bool
        Collapse each label to its median profile before scoring
    min_samples_per_label : int
        Minimum number of reference samples required for every label
    """

    label_key: str = "cell_type"
    coarse_key: Optional[str] = None
    layer: Optional[str] = None
    transform: str = "log1p"
    target_sum: Optional[float] = None
    aggregate: bool = False
    min_samples_per_label: int = 1

    def __post_init__(self) -> None:
        if self.transform not in TRANSFORMS:
            raise ValueError(
                f"Unknown transform '{self.transform}', expected one of {TRANSFORMS}"
            )
        if self.min_samples_per_label < 1:
            raise ValueError("min_samples_per_label must be >= 1")
        if self.target_sum is not None and self.target_sum <= 0:
            raise ValueError("target_sum must be positive")


@dataclass
class ScoringConfig:
    """Configuration for scoring query cells.

    Attributes
    ----------
    quantile : float
        Quantile of per-sample correlations used as a label's score
    fine_tune : bool
        Iteratively rescore near-tied labels on their own markers
    tune_threshold : float
        Labels within this distance of the best score stay in fine-tuning
    n_top_markers : int, optional
        Markers kept per label pair (None = derived from the label count)
    two_pass : bool
        Score coarse labels first, then fine labels within each coarse call
    n_jobs : int
        Worker processes for cell batches (1 = sequential, -1 = all cores)
    batch_size : int
        Cells per batch
    query_layer : str, optional
        Query layer to read (None = ``X``)
    """

    quantile: float = 0.8
    fine_tune: bool = True
    tune_threshold: float = 0.05
    n_top_markers: Optional[int] = None
    two_pass: bool = False
    n_jobs: int = 1
    batch_size: int = 500
    query_layer: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 < self.quantile <= 1.0:
            raise ValueError("quantile must be in (0, 1]")
        if self.tune_threshold < 0:
            raise ValueError("tune_threshold must be >= 0")
        if self.n_top_markers is not None and self.n_top_markers < 1:
            raise ValueError("n_top_markers must be >= 1")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero (-1 uses all cores)")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


@dataclass
class PruningConfig:
    """Configuration for pruning low-confidence assignments.

    Attributes
    ----------
    nmads : float
        Cells whose delta lies more than this many MADs below their label's
        median delta are pruned
    min_diff_med : float, optional
        Hard floor on the delta from the row median (None = disabled)
    min_diff_next : float
        Cells whose margin over the runner-up is not above this value are
        pruned
    """

    nmads: float = 3.0
    min_diff_med: Optional[float] = None
    min_diff_next: float = 0.0

    def __post_init__(self) -> None:
        if self.nmads < 0:
            raise ValueError("nmads must be >= 0")


@dataclass
class OutputConfig:
    """Configuration for exported results.

    Attributes
    ----------
    label_col : str
        Prefix for columns written to the query ``obs``
    normalize_heatmap : bool
        Min-max scale scores within each cell in the heatmap export
    write_checkpoint : bool
        Persist the score result so pruning can be re-run
    """

    label_col: str = "transfer_label"
    normalize_heatmap: bool = True
    write_checkpoint: bool = True


@dataclass
class TransferConfig:
    """Master configuration for a label-transfer run."""

    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferConfig":
        """Build configuration from a (possibly partial) nested dict."""
        data = data or {}
        if "transfer" in data:
            data = data["transfer"] or {}

        return cls(
            reference=ReferenceConfig(**(data.get("reference") or {})),
            scoring=ScoringConfig(**(data.get("scoring") or {})),
            pruning=PruningConfig(**(data.get("pruning") or {})),
            output=OutputConfig(**(data.get("output") or {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "TransferConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "TransferConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
