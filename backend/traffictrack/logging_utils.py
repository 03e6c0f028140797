from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from functools import lru_cache
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "traffictrack"
LOG_FILENAME = "traffic.log.jsonl"


def _log_dir_candidates(out_dir: str) -> Iterator[Path]:
    yield Path(out_dir) / "logs"
    yield Path.cwd() / "out" / "logs"
    yield Path(gettempdir()) / LOGGER_NAME / "logs"


def _resolve_log_dir(out_dir: str) -> Path | None:
    """First candidate directory that exists (or can be made) and is writable."""
    for log_dir in _log_dir_candidates(out_dir):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        if os.access(log_dir, os.W_OK):
            return log_dir
    return None


def _build_handlers(formatter: logging.Formatter) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            handlers.append(logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8"))
        except OSError:
            # stderr alone still carries every event
            pass
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


@lru_cache(maxsize=1)
def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        level = logging.getLevelName(settings.log_level.upper())
        logger.setLevel(level if isinstance(level, int) else logging.INFO)
        logger.propagate = False
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(message)s",
            rename_fields={"levelname": "level"},
        )
        for handler in _build_handlers(formatter):
            logger.addHandler(handler)
    return logger


def log_event(event: str, *, level: int = logging.INFO, exc_info: bool = False, **fields: Any) -> None:
    """Emit one JSON line whose message and `event` key are both the event name."""
    get_logger().log(level, event, exc_info=exc_info, extra={"event": event, **fields})
