"""Logging setup for the service process."""

from __future__ import annotations

import logging
from pathlib import Path

from brain_integration.config import LoggingConfig

_ROOT_LOGGER = "brain_integration"


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Configure the package logger once; later calls only adjust the level."""
    config = config or LoggingConfig()
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(getattr(logging, config.level.upper()))

    if getattr(logger, "_brain_configured", False):
        return logger

    formatter = logging.Formatter(config.format)
    handlers: list[logging.Handler] = []
    if config.console:
        handlers.append(logging.StreamHandler())
    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger._brain_configured = True  # type: ignore[attr-defined]
    return logger
