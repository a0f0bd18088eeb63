"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.handlers
from typing import Mapping

from ..config.models import LoggingConfig

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(config: LoggingConfig) -> None:
    """Route the host's loggers to a rotating file and, optionally, the console.

    ``config.levels`` raises or lowers single components, e.g. silencing the
    per-frame ``serial.codec`` debug output while the rest runs at DEBUG.
    """

    log_level = _parse_level(config.level)
    logging.captureWarnings(True)

    log_path = config.resolved_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_path,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handlers: list[logging.Handler] = [file_handler]
    if config.console:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    _apply_overrides(config.levels)


def _apply_overrides(levels: Mapping[str, str]) -> None:
    for name, level in levels.items():
        logging.getLogger(name).setLevel(_parse_level(level))


def _parse_level(level: str) -> int:
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value
