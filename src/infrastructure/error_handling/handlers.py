"""
Composable Error Handler

Retry-with-backoff wrapper for callers that own a retry policy (catalog
load, listen-key acquisition, account snapshot). Transport layers never
retry by themselves; they raise normalized errors and let the owner decide
through this handler.
"""

from typing import TypeVar, Callable, Awaitable, Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import random

from infrastructure.logging.interfaces import HFTLoggerInterface
from infrastructure.logging import LoggingTimer
from infrastructure.exceptions.exchange import (
    ExchangeRestError, ExchangeConnectionRestError, ExchangeDecodeError,
    RateLimitErrorRest, ExchangeBusinessError
)
from infrastructure.exceptions.system import ProtocolFatalError, ConnectionClosedError, ConfigurationError

T = TypeVar('T')


class ErrorSeverity(Enum):
    """Error severity levels for routing and handling decisions."""
    CRITICAL = "critical"      # Propagate immediately, no retry
    HIGH = "high"              # Retry with longer delays
    MEDIUM = "medium"          # Retry with backoff
    LOW = "low"                # Log and continue


@dataclass
class ErrorContext:
    """Context information for error handling operations."""
    operation: str
    component: str
    attempt: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Errors otherwise classified critical that this caller still wants retried
    retry_if: Optional[Callable[[Exception], bool]] = None

    # Called on transport failures before the next attempt
    reconnect_callback: Optional[Callable[[], Awaitable[None]]] = None
    # Called once retries are exhausted
    cleanup_callback: Optional[Callable[[], Awaitable[None]]] = None


class ComposableErrorHandler:
    """
    Error handler with retry, backoff and structured logging.

    CRITICAL errors re-raise on the first attempt; anything else is retried
    up to max_retries and then resolves to None.
    """

    def __init__(self, logger: HFTLoggerInterface, max_retries: int = 3, base_delay: float = 1.0,
                 component_name: Optional[str] = None):
        self.logger = logger
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.component_name = component_name or self.__class__.__name__

        self._backoff_cache = {
            i: min(self.base_delay * (2 ** (i - 1)), self.base_delay * 10) for i in range(1, self.max_retries + 1)
        }

    async def handle_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM
    ) -> Optional[T]:
        """Execute operation with retry; severity MEDIUM means auto-classify."""
        with LoggingTimer(self.logger, f"{context.operation}_error_handling") as timer:
            for attempt in range(1, self.max_retries + 1):
                context.attempt = attempt
                try:
                    result = await operation()
                except Exception as e:
                    actual_severity = self._classify_error(e) if severity == ErrorSeverity.MEDIUM else severity
                    if actual_severity == ErrorSeverity.CRITICAL and context.retry_if and context.retry_if(e):
                        actual_severity = ErrorSeverity.HIGH
                    self._log_failure(e, context, actual_severity, attempt)

                    if actual_severity == ErrorSeverity.CRITICAL:
                        raise

                    if attempt == self.max_retries:
                        if context.cleanup_callback:
                            await self._run_callback("cleanup", context.cleanup_callback, context)
                        self.logger.counter("error_handling_final_failure",
                                            component=self.component_name,
                                            operation=context.operation)
                        return None

                    if context.reconnect_callback and isinstance(e, (ExchangeConnectionRestError, ConnectionError)):
                        await self._run_callback("reconnect", context.reconnect_callback, context)

                    await asyncio.sleep(self._calculate_backoff(attempt, e))
                    continue

                if attempt > 1:
                    self.logger.info("Operation recovered after retry",
                                     component=self.component_name,
                                     operation=context.operation,
                                     attempts=attempt,
                                     recovery_time_ms=round(timer.elapsed_ms, 1))
                return result
        return None

    async def handle_single(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM
    ) -> Optional[T]:
        """Execute operation once; non-critical failures are logged and yield None."""
        context.attempt = 1
        try:
            return await operation()
        except Exception as e:
            actual_severity = self._classify_error(e) if severity == ErrorSeverity.MEDIUM else severity
            self._log_failure(e, context, actual_severity, 1)
            if actual_severity == ErrorSeverity.CRITICAL:
                raise
            return None

    async def _run_callback(self, name: str, callback: Callable[[], Awaitable[None]], context: ErrorContext) -> None:
        try:
            await callback()
        except Exception as callback_error:
            self.logger.error(f"Error executing {name} callback",
                              component=self.component_name,
                              operation=context.operation,
                              callback_error=str(callback_error))

    def _classify_error(self, exception: Exception) -> ErrorSeverity:
        """Classify exception severity for retry logic."""
        if isinstance(exception, (ValueError, TypeError, ConfigurationError)):
            return ErrorSeverity.CRITICAL

        if isinstance(exception, RateLimitErrorRest):
            return ErrorSeverity.HIGH

        if isinstance(exception, (ExchangeConnectionRestError, ConnectionClosedError, ProtocolFatalError,
                                  ConnectionError, asyncio.TimeoutError)):
            return ErrorSeverity.MEDIUM

        if isinstance(exception, ExchangeDecodeError):
            return ErrorSeverity.HIGH

        if isinstance(exception, ExchangeBusinessError):
            return ErrorSeverity.CRITICAL

        if isinstance(exception, ExchangeRestError):
            if exception.status_code in (400, 401, 403, 404):
                return ErrorSeverity.CRITICAL
            if exception.status_code == 429 or exception.status_code >= 500:
                return ErrorSeverity.HIGH

        return ErrorSeverity.MEDIUM

    def _calculate_backoff(self, attempt: int, exception: Optional[Exception] = None) -> float:
        """Exponential backoff with jitter; honours a venue-provided retry_after."""
        if isinstance(exception, RateLimitErrorRest) and exception.retry_after:
            return float(exception.retry_after)
        base_delay = self._backoff_cache.get(attempt, self.base_delay * 10)
        return base_delay * random.uniform(0.8, 1.2)

    def _log_failure(self, exception: Exception, context: ErrorContext, severity: ErrorSeverity,
                     attempt: int) -> None:
        error_data = {
            "component": self.component_name,
            "operation": context.operation,
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "attempt": attempt,
            "max_retries": self.max_retries,
            "severity": severity.value,
            **context.metadata,
        }

        if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH):
            self.logger.error(f"{severity.name}: Operation failed: {context.operation}", **error_data)
        elif severity == ErrorSeverity.MEDIUM:
            self.logger.warning(f"MEDIUM: Operation failed: {context.operation}", **error_data)
        else:
            self.logger.debug(f"LOW: Operation failed: {context.operation}", **error_data)
