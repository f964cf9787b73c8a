"""Utility functions for cluster cost attribution."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

import numpy as np
import pandas as pd
import structlog

MS_PER_SECOND = 1000
MS_PER_HOUR = 3600 * 1000


def setup_logging(level: str = "INFO", log_format: str = "console"):
    """Set up structured logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Format type ("console" or "json")
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        processors = [
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        Structured logger
    """
    return structlog.get_logger(name)


def normalize_node_type_series(series: pd.Series) -> pd.Series:
    """Normalize node type identifiers for catalog lookups (lower + trim), keeping nulls as NaN."""
    return series.where(series.isna(), series.astype(str).str.strip().str.lower())


def convert_seconds_to_hours(seconds: float) -> float:
    """Convert seconds to hours.

    Args:
        seconds: Value in seconds

    Returns:
        Value in hours
    """
    return seconds / 3600.0


def ms_to_datetime(ms: Union[int, float]) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(ms / MS_PER_SECOND, tz=timezone.utc)


def to_epoch_ms(value: Union[str, date, datetime, int, float]) -> int:
    """Convert a date, datetime, ISO string or epoch-ms number to epoch ms (UTC).

    Naive datetimes are interpreted as UTC.
    """
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.value // 1_000_000)


def ms_series_to_timestamp(series: pd.Series) -> pd.Series:
    """Convert an epoch-ms Series to UTC pandas timestamps."""
    return pd.to_datetime(series, unit="ms", utc=True)


def safe_round(series: pd.Series, decimals: int, floor: Optional[float] = 0.0) -> pd.Series:
    """Round a numeric Series and floor it (SQL greatest(round(x, n), floor)).

    Nulls stay null.
    """
    rounded = series.astype(float).round(decimals)
    if floor is None:
        return rounded
    return rounded.where(rounded.isna() | (rounded >= floor), floor)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open processing window ``[from_ms, until_ms)`` in epoch ms.

    Either bound may be ``None`` for an open side, which is how the
    "everything before this window" slice of history is expressed.
    """

    from_ms: Optional[int]
    until_ms: Optional[int]

    def __post_init__(self):
        if self.from_ms is not None and self.until_ms is not None and self.until_ms <= self.from_ms:
            raise ValueError(
                f"Invalid time window: until ({self.until_ms}) must be after from ({self.from_ms})"
            )

    @classmethod
    def from_values(cls, from_time: Any, until_time: Any) -> "TimeWindow":
        """Build a window from dates, datetimes, ISO strings or epoch ms."""
        return cls(
            None if from_time is None else to_epoch_ms(from_time),
            None if until_time is None else to_epoch_ms(until_time),
        )

    def before(self) -> "TimeWindow":
        """Window covering all history strictly before this window starts."""
        return TimeWindow(None, self.from_ms)

    def mask(self, timestamps: pd.Series) -> pd.Series:
        """Boolean mask of timestamps falling inside the window."""
        mask = pd.Series(True, index=timestamps.index)
        if self.from_ms is not None:
            mask &= timestamps >= self.from_ms
        if self.until_ms is not None:
            mask &= timestamps < self.until_ms
        return mask

    @property
    def until_date(self) -> Optional[date]:
        """UTC calendar date of the exclusive upper bound."""
        if self.until_ms is None:
            return None
        return ms_to_datetime(self.until_ms).date()


class PerformanceTimer:
    """Context manager for timing code execution."""

    def __init__(self, name: str, logger: Optional[structlog.BoundLogger] = None):
        """Initialize timer.

        Args:
            name: Name of the timed operation
            logger: Logger instance (optional)
        """
        self.name = name
        self.logger = logger or get_logger("performance")
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        """Start timer."""
        self.start_time = datetime.now()
        self.logger.info(f"Starting: {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Stop timer and log duration."""
        self.end_time = datetime.now()
        duration = (self.end_time - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.info(
                f"Completed: {self.name}",
                duration_seconds=round(duration, 3)
            )
        else:
            self.logger.error(
                f"Failed: {self.name}",
                duration_seconds=round(duration, 3),
                error=str(exc_val)
            )

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds.

        Returns:
            Duration in seconds or None if timer hasn't finished
        """
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


def format_bytes(bytes_value: int) -> str:
    """Format bytes as human-readable string.

    Args:
        bytes_value: Number of bytes

    Returns:
        Formatted string (e.g., "1.5 MB", "2.3 GB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(bytes_value) < 1024.0:
            return f"{bytes_value:.1f} {unit}"
        bytes_value /= 1024.0
    return f"{bytes_value:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2.3s", "1m 30s", "1h 15m")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def get_memory_usage():
    """Get current process memory usage.

    Returns:
        Memory usage in bytes
    """
    import psutil
    import os

    process = psutil.Process(os.getpid())
    return process.memory_info().rss


def log_memory_usage(logger, context=""):
    """Log current memory usage.

    Args:
        logger: Logger instance
        context: Optional context string
    """
    memory_bytes = get_memory_usage()
    logger.info(
        f"Memory usage{': ' + context if context else ''}",
        memory=format_bytes(memory_bytes)
    )
