"""
Logging configuration for teamcontext.

Library modules log under the "teamcontext" namespace and stay quiet
(WARNING) unless the embedding application asks for more.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "teamcontext"
OPS_LOG_NAME = "teamcontext-ops.log"

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _stderr_handler(logger: logging.Logger) -> Optional[logging.Handler]:
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stderr:
            return handler
    return None


def configure_logging(level: Union[str, int] = "WARNING") -> logging.Logger:
    """
    Attach a stderr handler to the package logger (once) and set its level.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = _stderr_handler(logger)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(handler)
    handler.setLevel(level)
    return logger


def enable_debug_mode() -> logging.Logger:
    """Enable debug-level logging to stderr."""
    return configure_logging(logging.DEBUG)


def configure_ops_log(cache_dir: Union[str, Path]) -> logging.Handler:
    """Configure a persistent operations log inside the cache directory.

    Writes to {cache_dir}/teamcontext-ops.log using a rotating file handler
    (1MB max, 3 backups). The cache directory is never synchronized.
    Returns the handler so it can be removed with remove_ops_log().
    """
    log_path = Path(cache_dir) / OPS_LOG_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(handler)
    # Let INFO through to the file even when stderr is quiet
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: Optional[logging.Handler]) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger(LOGGER_NAME).removeHandler(handler)
    handler.close()
