"""Exceptions raised by the label-transfer pipeline.

Every error carries the pipeline stage that raised it so callers (and the
CLI) can report where a run stopped.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple


class TransferError(ValueError):
    """Base class for label-transfer failures.

    Attributes:
        stage: Pipeline stage that failed ("input", "reference", "scoring",
            "pruning" or "annotation")
    """

    default_stage = "input"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage or self.default_stage

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class InvalidInputError(TransferError):
    """Malformed input: mismatched matrix/label pairing, bad values, etc."""


class EmptyLabelError(TransferError):
    """A declared label has zero reference samples."""

    default_stage = "reference"

    def __init__(self, labels: Iterable[str], stage: Optional[str] = None):
        self.labels: Tuple[str, ...] = tuple(labels)
        super().__init__(
            f"Labels with zero reference samples: {list(self.labels)}",
            stage=stage,
        )


class InsufficientOverlapError(TransferError):
    """Reference and query share no genes."""

    default_stage = "scoring"

    def __init__(
        self,
        missing_in_query: Sequence[str],
        missing_in_reference: Sequence[str],
        stage: Optional[str] = None,
        preview: int = 10,
    ):
        self.missing_in_query: Tuple[str, ...] = tuple(missing_in_query)
        self.missing_in_reference: Tuple[str, ...] = tuple(missing_in_reference)
        message = (
            "No genes shared between reference and query. "
            f"{len(self.missing_in_query)} reference genes absent from query "
            f"(e.g. {list(self.missing_in_query[:preview])}); "
            f"{len(self.missing_in_reference)} query genes absent from reference "
            f"(e.g. {list(self.missing_in_reference[:preview])})"
        )
        super().__init__(message, stage=stage)
