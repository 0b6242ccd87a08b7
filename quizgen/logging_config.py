from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LEVEL = os.getenv("QUIZGEN_LOG_LEVEL", "INFO").upper()


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = DEFAULT_LEVEL
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def get_logger(name: str, level: int | str | None = None) -> logging.Logger:
    """Module logger with a single stream handler; level defaults to ``QUIZGEN_LOG_LEVEL``."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    return logger


def set_pipeline_level(level: int | str) -> None:
    """Change the level of every logger already created under the ``quizgen`` namespace."""
    resolved = _resolve_level(level)
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith("quizgen") and isinstance(logger, logging.Logger):
            logger.setLevel(resolved)


__all__ = ["get_logger", "set_pipeline_level", "LOG_FORMAT"]
