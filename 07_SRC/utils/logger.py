# ==================================================
# ================ Logger Utilities ================
# ==================================================
from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

# Public API
__all__ = [
    "DEFAULT_LOG_DIR",
    "LOG_FORMAT",
    "make_file_handler",
    "get_logger",
    "get_error_logger",
    "get_debug_logger",
    "resolve_level",
]

# ====[ Global logging configuration ]====
# File logging is opt-in: set ND_THRESHOLDER_LOG_DIR or pass `log_dir`.
_ENV_LOG_DIR = os.environ.get("ND_THRESHOLDER_LOG_DIR")
DEFAULT_LOG_DIR: Optional[Path] = Path(_ENV_LOG_DIR).resolve() if _ENV_LOG_DIR else None

LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def resolve_level(level: Union[int, str]) -> int:
    """Accept either a logging constant or its name ('INFO', 'debug', ...)."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown logging level '{level}'")
    return value


def _sync_handler_levels(logger: logging.Logger, level: int) -> None:
    """Align every handler already attached to `logger` on `level`."""
    for h in logger.handlers:
        h.setLevel(level)


# ====[ Shared rotating file handler generator ]====
def make_file_handler(
    log_path: Union[str, Path],
    level: int,
    when: str = "midnight",
    backupCount: int = 7,
    encoding: str = "utf-8",
    interval: int = 1,
) -> TimedRotatingFileHandler:
    """
    Create a TimedRotatingFileHandler with the standard formatter.

    Parameters
    ----------
    log_path : str | Path
        Output log file path (parent directories are created).
    level : int
        Logging level (e.g., logging.INFO).
    when : str, default 'midnight'
        Rotation interval basis per logging.handlers.TimedRotatingFileHandler.
    backupCount : int, default 7
        Number of backup files to keep.
    encoding : str, default 'utf-8'
        File encoding.
    interval : int, default 1
        Rotation interval multiplier.

    Returns
    -------
    TimedRotatingFileHandler
    """
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = TimedRotatingFileHandler(
        filename=str(path),
        when=when,
        interval=interval,
        backupCount=backupCount,
        encoding=encoding,
        delay=True,  # open file on first emit
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _file_logger(
    name: str,
    prefix: str,
    log_dir: Optional[Union[str, Path]],
    level: int,
    backupCount: int,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not logger.handlers:
        base_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
        if base_dir is None:
            logger.addHandler(logging.NullHandler())
        else:
            today = datetime.now().strftime("%Y-%m-%d")
            logger.addHandler(
                make_file_handler(base_dir / f"{prefix}_{today}.log", level, backupCount=backupCount)
            )
    else:
        _sync_handler_levels(logger, level)
    return logger


# ==================================================
# ================ Logger Factory ==================
# ==================================================

# ====[ Main logger: console + optional file ]====
def get_logger(
    name: str = "nd_thresholder",
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.INFO,
    when: str = "midnight",
    backupCount: int = 7,
    console: bool = True,
) -> logging.Logger:
    """
    Create and configure a logger with a console handler and, when a log
    directory is known, a daily rotating file handler.

    The logger is idempotent: repeated calls with the same `name` do not add
    duplicate handlers, they only re-sync levels. Propagation is disabled to
    avoid duplicate messages from the root logger.

    Parameters
    ----------
    name : str, default 'nd_thresholder'
        Name of the logger instance.
    log_dir : str or Path, optional
        Directory for log files. Falls back to DEFAULT_LOG_DIR; no file is
        written when both are None.
    level : int or str, default logging.INFO
        Logging level.
    when : str, default 'midnight'
        Rotation interval basis.
    backupCount : int, default 7
        Number of rotated files to keep.
    console : bool, default True
        Attach a stderr StreamHandler.

    Returns
    -------
    logging.Logger
    """
    level = resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not logger.handlers:
        base_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
        if base_dir is not None:
            today = datetime.now().strftime("%Y-%m-%d")
            log_path = base_dir / f"{name}_{today}.log"
            logger.addHandler(make_file_handler(log_path, level, when=when, backupCount=backupCount))
        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(level)
            console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console_handler)
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
    else:
        _sync_handler_levels(logger, level)

    return logger


# ====[ Error logger: file only ]====
def get_error_logger(
    name: str = "nd_thresholder.errors",
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.ERROR,
    backupCount: int = 30,
) -> logging.Logger:
    """
    Dedicated error logger writing ERROR+ records to `errors_<date>.log`.

    Unlike the main logger it never writes to the console.
    """
    return _file_logger(name, "errors", log_dir, resolve_level(level), backupCount)


# ====[ Debug logger: file only ]====
def get_debug_logger(
    name: str = "nd_thresholder.debug",
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.DEBUG,
    backupCount: int = 7,
) -> logging.Logger:
    """
    Dedicated debug logger writing DEBUG+ records to `debug_<date>.log`.

    Useful for histogram / iteration traces without flooding the console.
    """
    return _file_logger(name, "debug", log_dir, resolve_level(level), backupCount)
