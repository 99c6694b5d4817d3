from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.settings import LOGGING

ROOT_LOGGER = "platemate"


def _ensure_root_logger() -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        path = Path(LOGGING.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            path,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(LOGGING.level.upper())
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return ``platemate.<name>``; the rotating file handler lives on the parent."""
    root = _ensure_root_logger()
    if not name:
        return root
    return root.getChild(name)


__all__ = ["get_logger", "ROOT_LOGGER"]
