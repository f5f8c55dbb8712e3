"""Centralized logging configuration for the lecture pipeline."""

from __future__ import annotations

import logging
import os
from logging import Logger
from pathlib import Path
from typing import Iterable, List, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

LOG_LEVEL_ENV_VAR = "LECTURE_PIPELINE_LOG_LEVEL"

# Marks handlers installed here so repeated CLI invocations do not stack them.
_HANDLER_MARKER = "_lecture_pipeline_handler"


def resolve_log_level(default: int = logging.INFO) -> int:
    """Return the level named by ``LECTURE_PIPELINE_LOG_LEVEL`` or *default*."""

    raw = (os.environ.get(LOG_LEVEL_ENV_VAR) or "").strip().upper()
    if not raw:
        return default
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def build_handlers(storage_root: Optional[Path] = None) -> List[logging.Handler]:
    """Return a console handler plus a file handler under *storage_root*."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if storage_root is not None:
        handlers.append(logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(
    level: Optional[int] = None,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> Logger:
    """Configure the root logger, replacing handlers from earlier calls."""

    logger = logging.getLogger()
    logger.setLevel(resolve_log_level() if level is None else level)

    for existing in list(logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            logger.removeHandler(existing)
            existing.close()

    for handler in handlers if handlers is not None else build_handlers():
        setattr(handler, _HANDLER_MARKER, True)
        logger.addHandler(handler)

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the pipeline log file."""

    return storage_root / "lecture_pipeline.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_LEVEL_ENV_VAR",
    "build_handlers",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
