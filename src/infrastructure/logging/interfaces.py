"""
Core Logging Interfaces

Lightweight interfaces for structured logging with pluggable backends.
Formatting happens in backends; loggers only build records.
"""

import time
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any, Dict, Optional
from dataclasses import dataclass, field


class LogLevel(IntEnum):
    """Log levels with numeric values matching the stdlib logging module."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


class LogType(IntEnum):
    """Log record kinds used by backends for filtering."""
    TEXT = 1
    METRIC = 2
    AUDIT = 3


@dataclass
class LogRecord:
    """
    Log record passed from logger to backends.

    venue/symbol/order_id are lifted out of the context so backends can
    render them consistently.
    """
    timestamp: float
    level: LogLevel
    log_type: LogType
    logger_name: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    # Only set for METRIC records
    metric_name: Optional[str] = None
    metric_value: Optional[float] = None

    venue: Optional[str] = None
    symbol: Optional[str] = None
    order_id: Optional[str] = None

    @classmethod
    def create_text(cls, level: LogLevel, logger_name: str, message: str, **context) -> 'LogRecord':
        return cls(
            timestamp=time.time(),
            level=level,
            log_type=LogType.TEXT,
            logger_name=logger_name,
            message=message,
            context=context
        )

    @classmethod
    def create_metric(cls, logger_name: str, metric_name: str, value: float, **tags) -> 'LogRecord':
        return cls(
            timestamp=time.time(),
            level=LogLevel.INFO,
            log_type=LogType.METRIC,
            logger_name=logger_name,
            message="",
            context=tags,
            metric_name=metric_name,
            metric_value=value
        )


class LogBackend(ABC):
    """
    Base class for all logging backends.

    Each backend handles its own formatting and output. A backend that keeps
    failing disables itself instead of breaking the caller.
    """

    def __init__(self, name: str, min_level: LogLevel = LogLevel.DEBUG):
        self.name = name
        self.min_level = min_level
        self.enabled = True
        self._error_count = 0
        self._max_errors = 10

    @abstractmethod
    def should_handle(self, record: LogRecord) -> bool:
        """Fast check if this backend should process the record."""
        pass

    @abstractmethod
    async def write(self, record: LogRecord) -> None:
        """Write a record from the async dispatch loop."""
        pass

    @abstractmethod
    def write_sync(self, record: LogRecord) -> None:
        """Write a record immediately (no event loop, or urgent records)."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Flush any buffered data."""
        pass

    def _handle_error(self, error: Exception) -> None:
        self._error_count += 1
        if self._error_count >= self._max_errors:
            self.enabled = False
            print(f"Backend {self.name} disabled after {self._max_errors} errors: {error}")


class HFTLoggerInterface(ABC):
    """
    Logger interface injected into every component as self.logger.
    """

    @abstractmethod
    def debug(self, msg: str, **context) -> None:
        pass

    @abstractmethod
    def info(self, msg: str, **context) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, **context) -> None:
        pass

    @abstractmethod
    def error(self, msg: str, **context) -> None:
        pass

    @abstractmethod
    def critical(self, msg: str, **context) -> None:
        pass

    @abstractmethod
    def metric(self, name: str, value: float, **tags) -> None:
        """Log a numeric metric."""
        pass

    @abstractmethod
    def latency(self, operation: str, duration_ms: float, **tags) -> None:
        pass

    @abstractmethod
    def counter(self, name: str, value: int = 1, **tags) -> None:
        pass

    @abstractmethod
    def audit(self, event: str, **context) -> None:
        """Log an audit event (order placement, cancel-all, pitch alerts)."""
        pass

    @abstractmethod
    def set_context(self, **context) -> None:
        """Set persistent context for all logs from this logger."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        pass

    # Python logging compatibility
    @abstractmethod
    def isEnabledFor(self, level: int) -> bool:
        pass

    @abstractmethod
    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        pass
