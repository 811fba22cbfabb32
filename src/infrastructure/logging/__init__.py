"""
Logging System

Usage:
    from infrastructure.logging import get_logger, get_exchange_logger

    logger = get_logger('series_cache')
    logger.info("Cache hit", bucket="2024-01-02")

    logger = get_exchange_logger('binance', 'ws.public')
    logger.debug("Subscribed", symbol="BTCUSDT")

    logger.metric("rest_weight", 120, endpoint="/api/v3/order")
"""

from .interfaces import (
    LogLevel,
    LogType,
    LogRecord,
    LogBackend,
    HFTLoggerInterface
)

from .hft_logger import HFTLogger, LoggingTimer

from .factory import (
    LoggerFactory,
    get_logger,
    get_exchange_logger,
)

from .structs import (
    LoggingConfig,
    BackendConfig,
    ConsoleBackendConfig,
    FileBackendConfig,
    PerformanceConfig,
)

from .backends.console import ConsoleBackend, ColorConsoleBackend
from .backends.file import FileBackend

__all__ = [
    'LogLevel',
    'LogType',
    'LogRecord',
    'LogBackend',
    'HFTLoggerInterface',
    'HFTLogger',
    'LoggingTimer',
    'LoggerFactory',
    'get_logger',
    'get_exchange_logger',
    'LoggingConfig',
    'BackendConfig',
    'ConsoleBackendConfig',
    'FileBackendConfig',
    'PerformanceConfig',
    'ConsoleBackend',
    'ColorConsoleBackend',
    'FileBackend',
]
