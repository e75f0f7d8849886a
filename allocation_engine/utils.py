"""Utility functions for cost allocation."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

# Billing uses binary gigabytes (1 GB = 2^30 bytes)
BYTES_PER_GIGABYTE = float(2 ** 30)


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


def parse_json_labels(labels_str: Optional[str]) -> Dict[str, str]:
    """Parse a JSON labels string (the JSONB ``labels`` column) into a dictionary.

    Args:
        labels_str: JSON object string, e.g. '{"app": "nginx", "env": "prod"}'

    Returns:
        Dictionary of labels (empty for null, invalid or non-object input)
    """
    if not labels_str or labels_str == 'null':
        return {}

    try:
        parsed = json.loads(labels_str)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def as_label_dict(value: Any) -> Dict[str, str]:
    """Normalize a labels cell (dict, JSON string, None/NaN) into a dictionary."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        return parse_json_labels(value)
    return {}


def convert_bytes_to_gigabytes(bytes_value: float) -> float:
    """Convert bytes to gigabytes (binary: 1 GB = 2^30 bytes).

    Args:
        bytes_value: Value in bytes

    Returns:
        Value in gigabytes
    """
    return bytes_value / BYTES_PER_GIGABYTE


def convert_millicores_to_cores(millicores: float) -> float:
    """Convert CPU millicores to cores."""
    return millicores / 1000.0


def safe_float(value: Any) -> float:
    """Coerce a numeric cell to float, treating None/NaN as 0."""
    if value is None:
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    # NaN != NaN
    return result if result == result else 0.0


def calculate_effective_usage(usage: float, request: float) -> float:
    """Calculate effective usage (max of usage and request).

    Billing is based on whichever is larger, so bursts above the
    request are still charged.

    Args:
        usage: Actual usage value
        request: Requested value

    Returns:
        Effective usage (greater of the two)
    """
    return max(usage, request)


def calculate_efficiency(usage: float, request: float) -> float:
    """Ratio of usage to request, 0 when nothing was requested."""
    if request > 0:
        return usage / request
    return 0.0


def parse_bool(value: Any) -> bool:
    """Interpret "true"/"1"-style flags coming from query strings or env vars."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "yes")


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC3339 in UTC (e.g. 2024-01-01T00:00:00Z)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


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
        self.logger.debug(f"Starting: {self.name}")
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
    import os

    import psutil

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
