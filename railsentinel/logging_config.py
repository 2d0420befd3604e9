import logging
import os
import time
from functools import wraps
from typing import Callable, Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """
    Sets up the package logger with a standard format.

    The level defaults to RAILSENTINEL_LOG_LEVEL (INFO when unset).
    """
    if level is None:
        level = os.environ.get("RAILSENTINEL_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("railsentinel")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def log_execution_time(logger: logging.Logger, warn_above_seconds: Optional[float] = None):
    """
    Decorator to measure and log execution time of a function.
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(f"{func.__name__} failed: {e}", exc_info=True)
                raise
            elapsed = time.perf_counter() - start
            if warn_above_seconds is not None and elapsed > warn_above_seconds:
                logger.warning(
                    f"{func.__name__} took {elapsed:.3f}s (budget {warn_above_seconds:.1f}s)"
                )
            elif logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"{func.__name__} executed in {elapsed:.3f}s")
            return result
        return wrapper
    return decorator
