"""
HFT Logger Implementation

Logger with ring buffer and async dispatch to backends. Log calls never
block on I/O: records are queued and drained by a background task on the
running event loop. WARNING and above are written synchronously as well so
they are never lost to a crashed or missing loop.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Any
import weakref

from common.ring_buffer import RingBuffer

from .interfaces import HFTLoggerInterface, LogBackend, LogRecord, LogLevel, LogType
from .structs import PerformanceConfig


class HFTLogger(HFTLoggerInterface):
    """
    Structured logger with multiple backends.

    Key features:
    - Ring buffer for message queuing
    - Async batch dispatch to backends
    - Persistent context (venue, symbol, ...)
    - Python logging compatibility (isEnabledFor/log)
    """

    _instances = weakref.WeakSet()

    def __init__(self, name: str, backends: List[LogBackend], config: PerformanceConfig):
        if not isinstance(config, PerformanceConfig):
            raise TypeError(f"Expected PerformanceConfig, got {type(config)}")

        self.name = name
        self.backends = backends
        self.batch_size = config.batch_size
        self.dispatch_interval = config.dispatch_interval

        self.context: Dict[str, Any] = {}
        self._buffer = RingBuffer[LogRecord](config.buffer_size)

        self._dispatch_task: Optional[asyncio.Task] = None
        self._shutdown = False

        HFTLogger._instances.add(self)

    @property
    def min_level(self) -> LogLevel:
        """Lowest level any enabled backend accepts."""
        levels = [b.min_level for b in self.backends if b.enabled]
        return min(levels) if levels else LogLevel.CRITICAL

    def _ensure_dispatch_task(self) -> bool:
        """Start the dispatch task on the running loop; False when no loop is running."""
        if self._dispatch_task is not None and not self._dispatch_task.done():
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._dispatch_task = loop.create_task(self._dispatch_loop())
        return True

    async def _dispatch_loop(self) -> None:
        try:
            while not self._shutdown:
                batch = self._buffer.get_batch(self.batch_size)
                if batch:
                    await self._process_batch(batch)
                else:
                    await asyncio.sleep(self.dispatch_interval)
        except asyncio.CancelledError:
            pass

    async def _process_batch(self, batch: List[LogRecord]) -> None:
        for record in batch:
            for backend in self.backends:
                if backend.enabled and backend.should_handle(record):
                    try:
                        await backend.write(record)
                    except Exception as e:
                        backend._handle_error(e)

    def _write_immediate(self, record: LogRecord) -> None:
        for backend in self.backends:
            if backend.enabled and backend.should_handle(record):
                try:
                    backend.write_sync(record)
                except Exception as e:
                    backend._handle_error(e)

    def _build_record(self, level: LogLevel, msg: str, log_type: LogType, context: Dict[str, Any]) -> LogRecord:
        full_context = {**self.context, **context}
        record = LogRecord(
            timestamp=time.time(),
            level=level,
            log_type=log_type,
            logger_name=self.name,
            message=msg,
            venue=full_context.pop('venue', None),
            symbol=full_context.pop('symbol', None),
            order_id=full_context.pop('order_id', None),
        )
        record.context = full_context
        return record

    def _log(self, level: LogLevel, msg: str, log_type: LogType = LogType.TEXT, **context) -> None:
        if level < self.min_level:
            return

        record = self._build_record(level, msg, log_type, context)

        if level >= LogLevel.WARNING:
            self._write_immediate(record)
            return

        if self._ensure_dispatch_task():
            if not self._buffer.put_nowait(record):
                print(f"HFTLogger buffer full, dropped message: {msg[:50]}")
        else:
            self._write_immediate(record)

    def debug(self, msg: str, **context) -> None:
        self._log(LogLevel.DEBUG, msg, **context)

    def info(self, msg: str, **context) -> None:
        self._log(LogLevel.INFO, msg, **context)

    def warning(self, msg: str, **context) -> None:
        self._log(LogLevel.WARNING, msg, **context)

    def error(self, msg: str, **context) -> None:
        self._log(LogLevel.ERROR, msg, **context)

    def critical(self, msg: str, **context) -> None:
        self._log(LogLevel.CRITICAL, msg, **context)

    def metric(self, name: str, value: float, **tags) -> None:
        record = LogRecord.create_metric(self.name, name, value, **{**self.context, **tags})
        if self._ensure_dispatch_task():
            self._buffer.put_nowait(record)

    def latency(self, operation: str, duration_ms: float, **tags) -> None:
        self.metric(f"{operation}_latency_ms", duration_ms, **tags)

    def counter(self, name: str, value: int = 1, **tags) -> None:
        self.metric(f"{name}_count", float(value), **tags)

    def audit(self, event: str, **context) -> None:
        self._log(LogLevel.INFO, event, LogType.AUDIT, **context)

    def set_context(self, **context) -> None:
        self.context.update(context)

    async def flush(self) -> None:
        remaining = self._buffer.get_batch(self._buffer.size())
        if remaining:
            await self._process_batch(remaining)
        for backend in self.backends:
            try:
                await backend.flush()
            except Exception as e:
                print(f"Backend {backend.name} flush error: {e}")

    def isEnabledFor(self, level: int) -> bool:
        return self._convert_py_level(level) >= self.min_level

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        if args:
            try:
                msg = msg % args
            except (TypeError, ValueError):
                pass
        self._log(self._convert_py_level(level), msg, **kwargs)

    @staticmethod
    def _convert_py_level(py_level: int) -> LogLevel:
        if py_level >= logging.CRITICAL:
            return LogLevel.CRITICAL
        elif py_level >= logging.ERROR:
            return LogLevel.ERROR
        elif py_level >= logging.WARNING:
            return LogLevel.WARNING
        elif py_level >= logging.INFO:
            return LogLevel.INFO
        return LogLevel.DEBUG

    def get_stats(self) -> Dict[str, Any]:
        return {
            "buffer_size": self._buffer.size(),
            "buffer_dropped": self._buffer.dropped_count(),
            "dispatch_task_running": self._dispatch_task is not None and not self._dispatch_task.done(),
            "backends_enabled": sum(1 for b in self.backends if b.enabled),
        }

    async def shutdown(self) -> None:
        self._shutdown = True
        if self._dispatch_task and not self._dispatch_task.done():
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
        await self.flush()

    @classmethod
    async def shutdown_all(cls) -> None:
        await asyncio.gather(*(logger.shutdown() for logger in list(cls._instances)),
                             return_exceptions=True)


class LoggingTimer:
    """Context manager timing a block and logging it as a latency metric."""

    def __init__(self, logger: HFTLoggerInterface, operation: str, **tags):
        self.logger = logger
        self.operation = operation
        self.tags = tags
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        self.logger.latency(self.operation, self.elapsed_ms, **self.tags)
        if exc_type is not None:
            self.logger.error(f"{self.operation} failed", error_type=exc_type.__name__, **self.tags)

    @property
    def elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        end_time = self.end_time or time.perf_counter()
        return (end_time - self.start_time) * 1000
