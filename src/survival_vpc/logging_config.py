"""Centralized logging configuration for survival_vpc.

Provides:
- Console plus file logging (main, performance, warnings, debug)
- Performance metric logging with timing data
- Warning capture and categorization (data-shape coercions, numerical issues)
- Progress tracking for the replicate loop

Example:
    >>> from survival_vpc.logging_config import setup_logging, log_performance
    >>> logger = setup_logging(run_name="rtte_vpc", log_level=logging.INFO)
    >>> log_performance(logger, "Replicates aggregated", n_replicates=500, duration_sec=4.2)
"""
import logging
import sys
import warnings
from pathlib import Path
from datetime import datetime
from typing import Optional
from contextlib import contextmanager


class PerformanceFilter(logging.Filter):
    """Pass only records tagged with an 'is_performance' attribute."""

    def filter(self, record):
        return hasattr(record, 'is_performance') and record.is_performance


class WarningErrorFilter(logging.Filter):
    """Pass only warnings and errors."""

    def filter(self, record):
        return record.levelno >= logging.WARNING


def setup_logging(
    run_name: str = "vpc",
    log_level: int = logging.INFO,
    console_output: bool = True,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """Setup logging for the survival_vpc namespace.

    Creates log files in data/outputs/{run_name}/logs/ (or log_dir):
    - main_{timestamp}.log: All log messages
    - performance_{timestamp}.log: Performance metrics only
    - warnings_{timestamp}.log: Warnings and errors only
    - debug_{timestamp}.log: Debug messages (if log_level=DEBUG)

    Args:
        run_name: Name of the run, used for the default log directory
        log_level: Minimum console log level
        console_output: Whether to output logs to console
        log_dir: Explicit log directory, overrides the run_name default

    Returns:
        Configured "survival_vpc" logger
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = Path(log_dir) if log_dir else Path(f"data/outputs/{run_name}/logs")
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("survival_vpc")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    performance_formatter = logging.Formatter(
        fmt='%(asctime)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(
        fmt='%(levelname)-8s | %(message)s'
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(simple_formatter)
        logger.addHandler(console_handler)

    main_handler = logging.FileHandler(
        log_path / f"main_{timestamp}.log", mode='w', encoding='utf-8'
    )
    main_handler.setLevel(logging.DEBUG)
    main_handler.setFormatter(detailed_formatter)
    logger.addHandler(main_handler)

    perf_handler = logging.FileHandler(
        log_path / f"performance_{timestamp}.log", mode='w', encoding='utf-8'
    )
    perf_handler.setLevel(logging.INFO)
    perf_handler.setFormatter(performance_formatter)
    perf_handler.addFilter(PerformanceFilter())
    logger.addHandler(perf_handler)

    warning_handler = logging.FileHandler(
        log_path / f"warnings_{timestamp}.log", mode='w', encoding='utf-8'
    )
    warning_handler.setLevel(logging.WARNING)
    warning_handler.setFormatter(detailed_formatter)
    warning_handler.addFilter(WarningErrorFilter())
    logger.addHandler(warning_handler)

    if log_level == logging.DEBUG:
        debug_handler = logging.FileHandler(
            log_path / f"debug_{timestamp}.log", mode='w', encoding='utf-8'
        )
        debug_handler.setLevel(logging.DEBUG)
        debug_handler.setFormatter(detailed_formatter)
        logger.addHandler(debug_handler)

    logger.info(f"Logging initialized for {run_name}")
    logger.info(f"Log directory: {log_path.absolute()}")

    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log a performance-related message with timing data.

    Example:
        >>> log_performance(logger, "Replicate loop completed",
        ...                 n_replicates=100, duration_sec=3.1)
        # Output: "Replicate loop completed | n_replicates=100 | duration_sec=3.1"
    """
    extra = {'is_performance': True}
    extra.update({f"metric_{k}": v for k, v in kwargs.items()})

    if kwargs:
        metrics_str = " | ".join(f"{k}={v}" for k, v in kwargs.items())
        full_message = f"{message} | {metrics_str}"
    else:
        full_message = message

    logger.info(full_message, extra=extra)


class WarningLogger:
    """Captures warnings and categorizes them.

    Categories:
    - data_shape: Dependent-variable coercion and censoring-column handling
    - numerical: Overflow, underflow, invalid values
    - empty: Empty strata, replicates or slices
    - other: Uncategorized warnings
    """

    WARNING_CATEGORIES = {
        'data_shape': ['DataShapeWarning', 'dependent variable', 'censoring information'],
        'numerical': ['overflow', 'underflow', 'invalid value', 'divide by zero'],
        'empty': ['empty', 'mean of empty slice', 'no events'],
    }

    def __init__(self, logger: logging.Logger, emit: bool = True):
        """Initialize warning logger.

        Args:
            logger: Logger instance to send warnings to
            emit: Log at WARNING level if True, at DEBUG level otherwise
        """
        self.logger = logger
        self.emit = emit
        self.warning_counts = {cat: 0 for cat in self.WARNING_CATEGORIES}
        self.warning_counts['other'] = 0

    def categorize_warning(self, message: str) -> str:
        message_lower = message.lower()
        for category, keywords in self.WARNING_CATEGORIES.items():
            if any(kw.lower() in message_lower for kw in keywords):
                return category
        return 'other'

    def log_warning(self, message: str, category: str = None):
        """Log a warning with category tag."""
        if category is None:
            category = self.categorize_warning(message)

        self.warning_counts[category] += 1
        level = logging.WARNING if self.emit else logging.DEBUG
        self.logger.log(level, f"[{category.upper()}] {message}")

    def summary(self) -> dict:
        """Return {category: count} for categories with warnings."""
        return {k: v for k, v in self.warning_counts.items() if v > 0}


@contextmanager
def capture_warnings(logger: logging.Logger, emit: bool = True):
    """Route Python warnings raised inside the block to the logger.

    Args:
        logger: Logger instance
        emit: If False, warnings are only logged at DEBUG level

    Yields:
        WarningLogger instance for accessing warning counts

    Example:
        >>> with capture_warnings(logger, emit=config.verbose) as warning_logger:
        ...     obs = prepare_observed(obs, config)
        >>> warning_logger.summary()
        {'data_shape': 1}
    """
    warning_logger = WarningLogger(logger, emit=emit)

    def warning_handler(message, category, filename, lineno, file=None, line=None):
        warning_logger.log_warning(f"{category.__name__}: {message}")

    old_showwarning = warnings.showwarning
    with warnings.catch_warnings():
        warnings.simplefilter("always")
        warnings.showwarning = warning_handler
        try:
            yield warning_logger
        finally:
            warnings.showwarning = old_showwarning

    summary = warning_logger.summary()
    if summary:
        summary_str = ", ".join(f"{k}={v}" for k, v in summary.items())
        logger.info(f"Warning summary: {summary_str}")


class ProgressLogger:
    """Logs progress updates for iterations.

    Example:
        >>> progress = ProgressLogger(logger, total=500, desc="Replicates", log_interval=100)
        >>> for rep in replicates:
        ...     progress.update(1)
        # Output: "Replicates: 100/500 (20.0%)"
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: int,
        desc: str,
        log_interval: int = 1
    ):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.log_interval = max(1, log_interval)
        self.current = 0

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        """Update progress by n steps."""
        self.current += n

        if self.current % self.log_interval == 0 or self.current == self.total:
            pct = (self.current / self.total) * 100 if self.total else 100.0
            msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"

            if metrics:
                metrics_str = ", ".join(f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}"
                                        for k, v in metrics.items())
                msg += f" | {metrics_str}"

            self.logger.info(msg)
