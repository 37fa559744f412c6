"""Logging setup for the indexing and retrieval engine.

Every module logs through ``get_logger(__name__)`` under the ``coderag``
namespace. The CLI calls ``setup_logging`` once; applications embedding the
engine can attach their own handlers to the ``coderag`` logger instead.
"""

import logging
import os
from typing import Optional

ROOT_LOGGER = "coderag"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Provider libraries that log every HTTP request or encode call at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "sentence_transformers", "urllib3")

_configured = False


def _resolve_level(level: str) -> int:
    # CODERAG_LOG_LEVEL wins over the argument; unknown names fall back
    fallback = getattr(logging, level.upper(), logging.INFO)
    env_level = os.getenv("CODERAG_LOG_LEVEL")
    if env_level:
        return getattr(logging, env_level.upper(), fallback)
    return fallback


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
) -> None:
    """Configure the ``coderag`` logger. Later calls are no-ops.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file. If None, logs to stderr only.
            ``CODERAG_LOG_FILE`` overrides it when set.
    """
    global _configured
    if _configured:
        return

    log_level = _resolve_level(level)
    env_file = os.getenv("CODERAG_LOG_FILE")
    if env_file is not None:
        log_file = env_file

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: Optional[OSError] = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            file_error = e

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(log_level)
    root.handlers.clear()
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # Provider chatter only matters when debugging
    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    if file_error is not None:
        root.warning("Could not open log file %s (%s), logging to stderr only", log_file, file_error)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``coderag`` namespace.

    Module names inside the package (``coderag.rag.chunker``) are used as-is;
    anything else is prefixed so that ``setup_logging`` still applies.
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
