"""Logging setup shared by the convolog command line tools.

Each CLI (ingest, capture, search) writes its own log file under
~/convolog/logs/. Library modules only call get_logger() and never add
handlers; their records reach stderr through the package logger once a
CLI has called setup_logging().
"""

import logging
import sys
from pathlib import Path

DEFAULT_LOG_DIR = Path.home() / "convolog" / "logs"

PACKAGE_LOGGER = "convolog"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Attach handlers for one CLI component.

    The component logger (convolog.<name>) gets a file handler writing
    <log_dir>/<name>.log. The console handler goes on the package logger
    instead, once per process, so parser, store and index records are
    shown alongside the component's own.

    Args:
        name: Component name, also the log file stem
        log_dir: Directory for log files (defaults to ~/convolog/logs/)
        level: Level for both handlers
        console: Whether to echo records to stderr

    Returns:
        The component logger
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = get_logger(name)
    logger.setLevel(level)

    # A second call for the same component is a no-op
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    file_handler = logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    if console and not package_logger.handlers:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a convolog module, e.g. get_logger("search") -> convolog.search."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
