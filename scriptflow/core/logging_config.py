"""
Scriptflow Logging Configuration

Every module logs through ``get_logger`` under the ``scriptflow`` namespace,
so one ``setup_logging`` call decides where parse sessions are reported.
A parse run can additionally mirror its records into a per-session file.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
from enum import Enum


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
VERBOSE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(funcName)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER_NAME = "scriptflow"

_loggers: dict = {}


def _attach(handler: logging.Handler, level: LogLevel, verbose: bool) -> logging.Handler:
    handler.setLevel(level.value)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT if verbose else DEFAULT_FORMAT, datefmt=DATE_FORMAT))
    logging.getLogger(ROOT_LOGGER_NAME).addHandler(handler)
    return handler


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    log_file: Optional[Path] = None,
    verbose: bool = False,
    console_output: bool = True
) -> None:
    """
    Configure the ``scriptflow`` logger tree.

    Calling it again replaces the handlers from the previous call.

    Args:
        level: Minimum log level to capture
        log_file: Optional path to log file
        verbose: If True, use verbose format with line numbers
        console_output: If True, output to stderr (stdout carries CLI results)
    """
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level.value)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if console_output:
        _attach(logging.StreamHandler(sys.stderr), level, verbose)
    if log_file:
        add_log_file(log_file, level, verbose)

    root_logger.debug(f"Logging initialized - Level: {level.name}, Verbose: {verbose}")


def add_log_file(log_file: Union[str, Path], level: LogLevel = LogLevel.INFO, verbose: bool = False) -> Path:
    """Mirror ``scriptflow`` records into ``log_file`` alongside the existing handlers."""
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    _attach(logging.FileHandler(path, encoding='utf-8'), level, verbose)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    if root_logger.level == logging.NOTSET or root_logger.level > level.value:
        root_logger.setLevel(level.value)
    return path


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Nothing is configured implicitly; a library user who never calls
    ``setup_logging`` keeps the standard library defaults.

    Args:
        name: Name of the module/component, e.g. ``"parsing.cache"``

    Returns:
        Logger instance
    """
    full_name = name if name.startswith(ROOT_LOGGER_NAME) else f"{ROOT_LOGGER_NAME}.{name}"

    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)

    return _loggers[full_name]


def create_session_log(base_dir: Union[str, Path], prefix: str = "session", level: LogLevel = LogLevel.INFO) -> Path:
    """
    Start a timestamped log file for one parse session.

    Console output configured earlier is kept.

    Returns:
        Path to created log file
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return add_log_file(Path(base_dir) / f"{prefix}_{timestamp}.log", level)
