"""
Logging configuration and utilities.

This module sets up consistent logging across the orchestrator, the
reconciler and the API process.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional


def setup_logger(
    name: str = 'tuning_engine',
    log_file: Optional[str] = None,
    level: int = logging.INFO,
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with console and file handlers.

    Args:
        name: Logger name
        log_file: Optional path to log file
        level: Logging level (default: INFO)
        format_string: Optional custom format string

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(
        >>>     name='tuning_engine',
        >>>     log_file='logs/reconciler.log',
        >>>     level=logging.DEBUG
        >>> )
        >>> logger.info("Reconciler started")
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    if format_string is None:
        format_string = '[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s'

    formatter = logging.Formatter(format_string, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get an existing logger by name."""
    return logging.getLogger(name)


def log_config(logger: logging.Logger, config: dict, title: str = "Configuration") -> None:
    """
    Log configuration dictionary in a readable format.

    Secrets (keys containing "key", "token" or "secret") are masked.

    Args:
        logger: Logger instance
        config: Configuration dictionary
        title: Title for the log section
    """
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)

    def log_dict(d: dict, indent: int = 0):
        for key, value in d.items():
            if isinstance(value, dict):
                logger.info("%s%s:", "  " * indent, key)
                log_dict(value, indent + 1)
            else:
                if value and any(s in str(key).lower() for s in ("key", "token", "secret")):
                    value = "****"
                logger.info("%s%s: %s", "  " * indent, key, value)

    log_dict(config)
    logger.info("=" * 60)


def format_fields(fields: dict) -> str:
    """Render fields as space separated key=value pairs (floats to 4 places)."""
    parts = []
    for k, v in fields.items():
        if isinstance(v, float):
            parts.append(f"{k}={v:.4f}")
        else:
            parts.append(f"{k}={v}")
    return " ".join(parts)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any
) -> None:
    """
    Log a structured event in a consistent format.

    The message reads ``event=<name> key=value ...`` and the same fields
    are attached to the record (``record.event``, ``record.fields``) so
    handlers can ship them elsewhere.

    Example:
        >>> log_event(logger, logging.WARNING, "remote_unreachable",
        ...           job_id="a1b2c3d4", attempt=3)
    """
    if not logger.isEnabledFor(level):
        return
    msg = f"event={event}"
    if fields:
        msg += " " + format_fields(fields)
    logger.log(level, msg, extra={"event": event, "fields": fields})
