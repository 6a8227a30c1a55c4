"""Timing utilities for performance logging.

Example:
    >>> from survival_vpc.timing import log_execution_time, Timer
    >>>
    >>> @log_execution_time()
    ... def vpc_tte(obs, sim, config):
    ...     ...
    >>> with Timer(logger, "Observed Kaplan-Meier"):
    ...     obs_km = compute_kaplan(obs)
"""
import time
import functools
import logging
from typing import Callable, Optional

from survival_vpc.logging_config import log_performance


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator logging the wall-clock duration of a function.

    Success is logged as a performance record; failure is logged as an
    error with traceback and the exception is re-raised.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            log = logger or logging.getLogger(func.__module__)
            start_time = time.perf_counter()
            log.debug(f"Starting: {func.__name__}")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                log.error(f"{func.__name__} failed after {duration:.2f}s: {e}", exc_info=True)
                raise

            duration = time.perf_counter() - start_time
            log_performance(log, f"Completed: {func.__name__}", duration_sec=round(duration, 3))
            return result

        return wrapper
    return decorator


class Timer:
    """Context manager timing a block and logging it as a performance metric.

    Example:
        >>> with Timer(logger, "Replicate aggregation") as timer:
        ...     sim_km = aggregate_replicates(sim, edges)
        >>> timer.duration
        1.84
    """

    def __init__(self, logger: logging.Logger, description: str):
        self.logger = logger
        self.description = description
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time

        if exc_type is None:
            log_performance(
                self.logger,
                f"Completed: {self.description}",
                duration_sec=round(self.duration, 3)
            )
        else:
            self.logger.error(f"{self.description} failed after {self.duration:.2f}s: {exc_val}")

        return False

    def elapsed(self) -> float:
        """Elapsed seconds since entering the context."""
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
