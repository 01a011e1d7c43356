"""Centralized logging configuration.

Entry points (CLI, API server, periodic runner) call ``setup_logging`` once;
library modules only ever use ``logging.getLogger(__name__)``.
"""

import logging
import os
from pathlib import Path


def setup_logging(
    name: str = "islandloaf",
    level: str | None = None,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure logging with consistent format.

    Args:
        name: Logger name returned to the caller
        level: Log level (defaults to LOG_LEVEL env var or INFO)
        log_file: Optional file path for logging output

    Returns:
        Configured logger instance
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    return logging.getLogger(name)
