"""
Logging Factory

Creates and caches logger instances from struct-based configuration.
Components receive their logger through get_logger()/get_exchange_logger()
and keep it as self.logger.
"""

import os
from typing import Dict, Optional

from .interfaces import HFTLoggerInterface, LogBackend
from .hft_logger import HFTLogger
from .backends.console import ConsoleBackend, ColorConsoleBackend
from .backends.file import FileBackend
from .structs import LoggingConfig, PerformanceConfig


class LoggerFactory:
    """Logging factory - trust config, fail fast."""

    _cached_loggers: Dict[str, HFTLoggerInterface] = {}
    _default_config: Optional[LoggingConfig] = None

    @classmethod
    def create_logger(cls, name: str, config: Optional[LoggingConfig] = None) -> HFTLoggerInterface:
        if name in cls._cached_loggers:
            return cls._cached_loggers[name]

        config = config or cls._get_default_config()

        backends: list[LogBackend] = []
        if config.console and config.console.enabled:
            backend_class = ColorConsoleBackend if config.console.color else ConsoleBackend
            backends.append(backend_class(config.console, 'console'))
        if config.file and config.file.enabled:
            backends.append(FileBackend(config.file, 'file'))

        logger = HFTLogger(
            name=name,
            backends=backends,
            config=config.performance or PerformanceConfig()
        )
        cls._cached_loggers[name] = logger
        return logger

    @classmethod
    def configure(cls, config: LoggingConfig) -> None:
        """Install a default config; loggers created afterwards use it."""
        config.validate()
        cls._cached_loggers.clear()
        cls._default_config = config

    @classmethod
    def clear_cache(cls) -> None:
        cls._cached_loggers.clear()
        cls._default_config = None

    @classmethod
    def _get_default_config(cls) -> LoggingConfig:
        if cls._default_config is None:
            cls._default_config = cls._load_default_config()
        return cls._default_config

    @classmethod
    def _load_default_config(cls) -> LoggingConfig:
        # Delayed import to avoid circular dependency with config
        from config import get_config
        from infrastructure.exceptions.system import ConfigurationError

        try:
            return get_config().get_logging_config()
        except ConfigurationError:
            if os.getenv('ENVIRONMENT', 'dev') == 'prod':
                return LoggingConfig.default_production()
            return LoggingConfig.default_development()


def get_logger(name: str) -> HFTLoggerInterface:
    """Get logger instance."""
    return LoggerFactory.create_logger(name)


def get_exchange_logger(venue: str, component: Optional[str] = None) -> HFTLoggerInterface:
    """Get venue logger with optional component, e.g. ('binance', 'ws.public')."""
    name = f"{venue}.{component}" if component else venue
    logger = get_logger(name)
    logger.set_context(venue=venue)
    return logger
