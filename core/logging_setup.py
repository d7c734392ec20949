"""Rotating file logger shared by the sync subsystem."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.settings import LOGGING


def get_logger(name: str = "sparetime.sync") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        path = Path(LOGGING.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = RotatingFileHandler(
                path,
                maxBytes=LOGGING.max_bytes,
                backupCount=LOGGING.backup_count,
                encoding="utf-8",
            )
        except OSError:
            # read-only data dir: keep logging to stderr
            handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(LOGGING.level)
    return logger


__all__ = ["get_logger"]
