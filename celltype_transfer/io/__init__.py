"""I/O utilities for CellType-Transfer.

Provides logging, data loading and checkpoint utilities.
"""

from .logging import get_logger, get_timestamped_log_path, log_yaml
from .loaders import (
    ensure_output_dir,
    read_anndata,
    read_expression,
    read_labels,
    write_dataframe,
)
from .checkpoint import (
    load_checkpoint,
    load_reference,
    save_checkpoint,
    save_reference,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_yaml",
    # Loading
    "ensure_output_dir",
    "read_anndata",
    "read_expression",
    "read_labels",
    "write_dataframe",
    # Checkpoints
    "save_checkpoint",
    "load_checkpoint",
    "save_reference",
    "load_reference",
]
