"""Centralized logging configuration for the sermon preparation service."""

from __future__ import annotations

import logging
import os
from logging import Logger
from pathlib import Path
from typing import Iterable, List, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV_VAR = "SERMON_PREP_LOG_LEVEL"

# Marks handlers installed here so a second configure call replaces them.
_MANAGED_ATTRIBUTE = "_sermon_prep_managed"


def resolve_log_level(value: Optional[str] = None, default: int = logging.INFO) -> int:
    """Translate a level name (or ``SERMON_PREP_LOG_LEVEL``) into a logging level."""

    raw = value if value is not None else os.environ.get(LOG_LEVEL_ENV_VAR, "")
    name = str(raw).strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "sermon_prep.log"


def build_log_handlers(storage_root: Optional[Path] = None) -> List[logging.Handler]:
    """Return a console handler plus, when ``storage_root`` is given, a file handler."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if storage_root is not None:
        handlers.append(logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(level: Optional[int] = None, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Configure the root logger, replacing handlers from an earlier call."""

    logger = logging.getLogger()
    logger.setLevel(level if level is not None else resolve_log_level())

    for existing in list(logger.handlers):
        if getattr(existing, _MANAGED_ATTRIBUTE, False):
            logger.removeHandler(existing)
            existing.close()

    for handler in handlers if handlers is not None else build_log_handlers():
        setattr(handler, _MANAGED_ATTRIBUTE, True)
        logger.addHandler(handler)

    return logger


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_LEVEL_ENV_VAR",
    "build_log_handlers",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
