"""Centralized logging configuration for dossier."""

import logging
import os
import sys

# Third-party loggers that log every request at INFO; only shown when debugging
CHATTY_LOGGERS = ("httpx", "httpcore")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_level(level_name: str | None = None) -> int:
    """The numeric level for a name, falling back to DOSSIER_LOG_LEVEL and then WARNING."""

    log_level_name = (level_name or os.getenv("DOSSIER_LOG_LEVEL") or "WARNING").upper()
    level = logging.getLevelName(log_level_name)
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(level_name: str | None = None) -> None:
    """Configure logging for dossier workers and the CLI.

    - DEBUG: One line per store and queue operation, plus every HTTP request
    - INFO: Job submissions, worker start/stop and stalled job recovery
    - WARNING: Failed attempts, retries and rejected completions (default)
    - ERROR: Failures that could not be recorded
    """
    log_level = resolve_level(level_name)

    logging.basicConfig(level=log_level, stream=sys.stderr, format=LOG_FORMAT)

    for handler in logging.getLogger().handlers:
        handler.setLevel(log_level)

    chatty_level = log_level if log_level <= logging.DEBUG else max(log_level, logging.WARNING)
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
