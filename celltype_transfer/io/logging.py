"""Logging utilities for CellType-Transfer.

Provides timestamped run logs for CLI commands and YAML run records.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Tuple, Union

import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Generate a timestamped log path from the base log path.

    Example: score.log -> score_20251209_080530.log

    Parameters
    ----------
    log_path : PathLike
        Base log file path.

    Returns
    -------
    Path
        Timestamped log path.
    """
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = log_path.suffix or ".log"
    return log_path.parent / f"{log_path.stem}_{timestamp}{suffix}"


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
    console: bool = False,
) -> Tuple[logging.Logger, Path]:
    """Return a file logger for a run, optionally echoing to stderr.

    Parameters
    ----------
    name : str
        Logger name (typically the command name).
    log_path : PathLike
        Base path for the log file.
    level : int
        Logging level (default: INFO).
    timestamped : bool
        If True, add a timestamp to the filename to keep earlier logs.
        If False, overwrite the existing log file.
    console : bool
        Also log to stderr with the same format.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the actual log file path.
    """
    log_path = Path(log_path)
    if timestamped:
        actual_log_path = get_timestamped_log_path(log_path)
    else:
        actual_log_path = log_path
        actual_log_path.unlink(missing_ok=True)
    actual_log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    file_handler = logging.FileHandler(actual_log_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger, actual_log_path


def log_yaml(
    log_path: PathLike,
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append a YAML document to log_path.

    Parameters
    ----------
    log_path : PathLike
        Path to the YAML record file.
    record : dict
        Dictionary to serialize as YAML.
    logger : logging.Logger, optional
        If provided, log to this logger instead of the file.
    """
    yaml_text = yaml.safe_dump(record, sort_keys=False).rstrip("\n")
    message = f"{yaml_text}\n---"
    if logger is not None:
        logger.info("%s", message)
        return

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(message)
        handle.write("\n")
