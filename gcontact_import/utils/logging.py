"""
Logging setup for gcontact_import.

All package loggers hang off the ``gcontact_import`` logger, which gets a
console handler on stderr and, unless disabled, a dated log file under
``<config-dir>/logs``. Deduplication decisions go to their own logger
(``gcontact_import.dedup``) which stays silent until
``setup_dedup_logger`` attaches a file to it.

Environment variables:
    GCONTACT_IMPORT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL
    GCONTACT_IMPORT_DEBUG: any of 1/true/yes forces DEBUG
    GCONTACT_IMPORT_LOG_FILE: explicit log file, or none/disabled
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from gcontact_import.utils.paths import resolve_config_dir

ROOT_LOGGER_NAME = "gcontact_import"
DEDUP_LOGGER_NAME = "gcontact_import.dedup"

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DEDUP_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "GCONTACT_IMPORT_LOG_LEVEL"
ENV_DEBUG = "GCONTACT_IMPORT_DEBUG"
ENV_LOG_FILE = "GCONTACT_IMPORT_LOG_FILE"

MAIN_LOG_PATTERN = "gcontact_import_*.log"
DEDUP_LOG_PATTERN = "dedup_*.log"

_LEVEL_NAMES = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}
_TRUTHY = ("1", "true", "yes")
_DISABLED = ("", "none", "disabled")

# Set by setup_logging(); the dedup log and log cleanup default to it
_active_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name and message by severity."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._terminal_has_color()

    @staticmethod
    def _terminal_has_color() -> bool:
        isatty = getattr(sys.stderr, "isatty", None)
        if isatty is None or not isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)

        # Work on a copy so file handlers see the uncolored record
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        colored.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(colored)


def get_log_level_from_env() -> int:
    """
    Resolve the log level from the environment.

    GCONTACT_IMPORT_DEBUG takes precedence over GCONTACT_IMPORT_LOG_LEVEL;
    unknown level names mean INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in _TRUTHY:
        return logging.DEBUG
    name = os.environ.get(ENV_LOG_LEVEL, "INFO").strip().upper()
    return _LEVEL_NAMES.get(name, logging.INFO)


def default_log_dir() -> Path:
    return resolve_config_dir() / "logs"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Decide where the main log file goes.

    Args:
        log_dir: Directory for the dated log file (default: config logs dir)

    Returns:
        The log file path, or None when GCONTACT_IMPORT_LOG_FILE disables it
    """
    override = os.environ.get(ENV_LOG_FILE)
    if override is not None:
        return None if override.lower() in _DISABLED else Path(override)

    directory = log_dir or default_log_dir()
    return directory / f"gcontact_import_{datetime.now():%Y%m%d}.log"


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _open_file_handler(path: Path, level: int, fmt: str) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, DATE_FORMAT))
    return handler


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Calling this again replaces the handlers from the previous call.

    Args:
        level: Console level; read from the environment when None
        verbose: Force DEBUG and include file/line in console output
        log_dir: Directory for the dated log file
        log_file: Explicit log file path (wins over log_dir)
        enable_file_logging: Attach a file handler at all
        use_colors: Color console output when stderr is a terminal

    Returns:
        The ``gcontact_import`` logger
    """
    global _active_log_dir

    if verbose:
        level = logging.DEBUG
    elif level is None:
        level = get_log_level_from_env()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    _reset_handlers(logger)
    logger.setLevel(level)
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    if use_colors:
        console.setFormatter(ColoredFormatter(console_format, DATE_FORMAT))
    else:
        console.setFormatter(logging.Formatter(console_format, DATE_FORMAT))
    logger.addHandler(console)

    _active_log_dir = log_dir or (log_file.parent if log_file else None)

    if not enable_file_logging:
        return logger

    path = log_file or get_log_file_path(log_dir)
    if path is None:
        return logger

    try:
        # The file always records debug output, whatever the console shows
        logger.addHandler(_open_file_handler(path, logging.DEBUG, VERBOSE_FORMAT))
        logger.setLevel(logging.DEBUG)
    except OSError as e:
        logger.warning(f"Could not create log file {path}: {e}")
    else:
        logger.debug(f"Log file: {path}")

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete all but the ``keep_count`` newest main and dedup log files.

    Returns:
        Number of files deleted (0 when keep_count <= 0 or the directory
        does not exist)
    """
    if keep_count <= 0:
        return 0

    directory = log_dir or _active_log_dir or default_log_dir()
    if not directory.is_dir():
        return 0

    deleted = 0
    for pattern in (MAIN_LOG_PATTERN, DEDUP_LOG_PATTERN):
        newest_first = sorted(
            directory.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True
        )
        for stale in newest_first[keep_count:]:
            try:
                stale.unlink()
            except OSError as e:
                get_logger(__name__).debug(f"Could not delete old log {stale}: {e}")
            else:
                deleted += 1
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``gcontact_import`` hierarchy."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def setup_dedup_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Attach a file to the dedup decision logger.

    The deduplicator logs each record's outcome there: created or merged,
    the tier that matched, and which fields a merge changed. Falls back to
    stderr if the file cannot be created.

    Args:
        log_file: Log file path (default: dedup_<timestamp>.log in the
            active logs directory)
        level: Logger level

    Returns:
        The ``gcontact_import.dedup`` logger
    """
    logger = logging.getLogger(DEDUP_LOGGER_NAME)
    _reset_handlers(logger)
    logger.setLevel(level)
    logger.propagate = False

    if log_file is None:
        directory = _active_log_dir or default_log_dir()
        log_file = directory / f"dedup_{datetime.now():%Y%m%d_%H%M%S}.log"

    try:
        logger.addHandler(_open_file_handler(log_file, level, DEDUP_LOG_FORMAT))
    except OSError as e:
        fallback = logging.StreamHandler(sys.stderr)
        fallback.setLevel(level)
        fallback.setFormatter(logging.Formatter(DEDUP_LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(fallback)
        logger.warning(f"Could not create dedup log file {log_file}: {e}")
    else:
        logger.info(f"Dedup log session started at {datetime.now().isoformat()}")

    return logger


def get_dedup_logger() -> logging.Logger:
    return logging.getLogger(DEDUP_LOGGER_NAME)


__all__ = [
    "ColoredFormatter",
    "cleanup_old_logs",
    "get_dedup_logger",
    "get_log_level_from_env",
    "get_logger",
    "setup_dedup_logger",
    "setup_logging",
]
