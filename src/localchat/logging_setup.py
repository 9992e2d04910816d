"""Process-wide logging configuration."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if isinstance(resolved, int):
        return resolved
    logging.getLogger(__name__).warning("Unknown log level %r; using INFO", level)
    return logging.INFO


def configure_logging(level: str | int = "info") -> None:
    logging.basicConfig(level=resolve_level(level), format=LOG_FORMAT, datefmt=DATE_FORMAT, force=True)
    logging.getLogger(__name__).info("Logger initialized (level=%s)", logging.getLevelName(resolve_level(level)))
