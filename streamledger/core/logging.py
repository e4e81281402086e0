from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    level_name = level.upper().strip()
    numeric_level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    _ensure_stdout_handler(root, numeric_level)
    if log_file is not None:
        _ensure_file_handler(root, numeric_level, log_file)


def _ensure_stdout_handler(root: logging.Logger, numeric_level: int) -> None:
    for handler in root.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            handler.setLevel(numeric_level)
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def _ensure_file_handler(root: logging.Logger, numeric_level: int, log_file: Path) -> None:
    target = str(log_file)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            handler.setLevel(numeric_level)
            return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))
