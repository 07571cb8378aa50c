from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from core.config import LoggingConfig

ROOT_LOGGER_NAMES = (
    "core",
    "features",
    "models",
    "training",
    "model_registry",
    "monitoring",
    "storage",
    "adaptive",
    "inference",
    "app",
)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _build_handlers(config: LoggingConfig) -> list[logging.Handler]:
    text_formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    json_formatter = _JsonFormatter()

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    if config.console_log_format.lower() == "json":
        console.setFormatter(json_formatter)
    else:
        console.setFormatter(text_formatter)
    handlers.append(console)

    if config.log_dir is None:
        return handlers

    log_dir: Path = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        filename=str(log_dir / config.log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)
    handlers.append(file_handler)

    if config.enable_json_file_log:
        json_file_handler = RotatingFileHandler(
            filename=str(log_dir / config.json_log_file),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        json_file_handler.setFormatter(json_formatter)
        handlers.append(json_file_handler)

    return handlers


def setup_app_logger(config: LoggingConfig) -> list[logging.Logger]:
    """Attach console and rotating file handlers to every package logger."""
    handlers = _build_handlers(config)
    configured: list[logging.Logger] = []

    for name in ROOT_LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(config.log_level.upper())
        if logger.handlers:
            configured.append(logger)
            continue
        for handler in handlers:
            logger.addHandler(handler)
        logger.propagate = False
        configured.append(logger)

    return configured
