"""Logging helpers for the release ladder."""

from __future__ import annotations

import logging
import os
from pathlib import Path


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: int | str = logging.INFO, log_file: str | Path | None = None) -> None:
    """Configure default logging if no handlers are present.

    ``log_file`` is attached to the root logger even when something else
    already configured it, so a run can always be mirrored to disk.
    """
    root = logging.getLogger()
    resolved = _resolve_level(level)
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    if log_file:
        attach_file_handler(Path(log_file))


def attach_file_handler(path: Path) -> logging.Handler:
    root = logging.getLogger()
    target = os.path.abspath(path)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return handler
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(handler)
    return handler


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level!r}")
    return resolved
