"""
Logging setup shared by the API process, the CLI and the crypto core.

Every module asks for its logger through get_logger(name); handlers are
attached once to the "shielded_vault" root so child loggers inherit them.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

ROOT_LOGGER_NAME = "shielded_vault"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach handlers to the root project logger.

    Args:
        level: Level name (defaults to $LOG_LEVEL or INFO)
        log_file: Optional path for an extra file handler (defaults to $LOG_FILE)

    Returns:
        The configured root project logger
    """
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    if _configured:
        return root

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)

    path = log_file or os.getenv("LOG_FILE")
    if path:
        fh = logging.FileHandler(path, mode="a")
        fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(fh)

    root.propagate = False
    _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
