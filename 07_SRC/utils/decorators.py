# ==================================================
# ========  MODULE: decorators & timing utils  =====
# ==================================================
from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from utils.logger import get_logger, get_error_logger

# Public API
__all__ = [
    "log_exceptions",
    "safe_timer",
]

F = TypeVar("F", bound=Callable[..., Any])

# Attribute set on exceptions already written to an error log
_LOGGED_FLAG = "_nd_thresholder_logged"


def _log_once(logger: logging.Logger, label: str, e: Exception) -> None:
    """Log `e` with its traceback unless a nested decorated call already did."""
    if getattr(e, _LOGGED_FLAG, False):
        return
    logger.error(f"Exception in '{label}': {type(e).__name__}: {e}", exc_info=True)
    setattr(e, _LOGGED_FLAG, True)


# ====[ Exception logger decorator ]====
def log_exceptions(
    logger_name: str = "nd_thresholder.errors",
) -> Callable[[F], F]:
    """
    Log exceptions raised by the wrapped function to the error logger, then
    re-raise them unchanged.

    An exception crossing several decorated calls (e.g. `ThresholderND.__call__`
    around `VoxelClassifier.classify`) is logged once, by the innermost one.

    Parameters
    ----------
    logger_name : str
        Name used to get the error logger.
    """
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _log_once(get_error_logger(name=logger_name), func.__qualname__, e)
                raise
        return wrapper
    return decorator


# ====[ Combined safe timer ]====
def safe_timer(
    name: Optional[str] = None,
    info_logger: Optional[logging.Logger] = None,
    level: int = logging.DEBUG,
) -> Callable[[F], F]:
    """
    Logger-based timing decorator (no print), exceptions logged once and re-raised.

    Parameters
    ----------
    name : str, optional
        Label used in logs (defaults to the function's qualified name).
    info_logger : logging.Logger, optional
        Logger receiving the timing record (defaults to `get_logger()`).
    level : int, default logging.DEBUG
        Level of the timing record.
    """
    def decorator(func: F) -> F:
        label = name or func.__qualname__

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_once(get_error_logger(), label, e)
                raise
            elapsed = time.perf_counter() - start
            (info_logger or get_logger()).log(level, f"Execution time for '{label}': {elapsed:.3f} seconds")
            return result
        return wrapper
    return decorator
