"""
Logging setup for tagsync entry points.

Library modules only create ``logging.getLogger(__name__)`` loggers; handlers
are attached here by the CLI and long-running dispatcher processes.
"""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    level: str | int = "INFO",
    log_file: Path | None = None,
    *,
    console: bool = True,
) -> logging.Logger:
    """
    Attach handlers to the root ``tagsync`` logger.

    Parameters
    ----------
    level : str | int, optional
        Log level name or number (default "INFO").
    log_file : Path | None, optional
        When given, also write to this file (parent directories are created).
    console : bool, optional
        Whether to log to stderr (default True).

    Returns
    -------
    logging.Logger
        The configured ``tagsync`` logger.
    """
    log_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger("tagsync")
    root_logger.setLevel(log_level)

    # Re-configuring replaces handlers instead of stacking them
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    return root_logger
