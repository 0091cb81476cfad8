"""Logging helpers."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from convorec.constants import APP_NAME


def setup_logging(log_dir: Path, level: int | str = logging.INFO) -> tuple[logging.Logger, Path]:
    """Attach a rotating file handler for ``log_dir`` to the ``convorec`` logger.

    Calling it again with the same directory only updates the level.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{APP_NAME}.log"

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(APP_NAME)
    logger.setLevel(level)

    target = os.path.abspath(log_path)
    if not any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == target
        for h in logger.handlers
    ):
        handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
        fmt = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    return logger, log_path
