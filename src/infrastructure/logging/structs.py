"""
Logging Configuration Structures

Struct-based configuration for the logging system using msgspec.Struct.
"""

from typing import Optional, Dict, Any

import msgspec
from msgspec import Struct

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class BackendConfig(Struct, frozen=True):
    """
    Base configuration for all logging backends.

    Attributes:
        enabled: Whether this backend is active
        min_level: Minimum log level to process
    """
    enabled: bool = True
    min_level: str = "INFO"

    def validate(self) -> None:
        if self.min_level.upper() not in _VALID_LEVELS:
            raise ValueError(f"Invalid log level: {self.min_level}")


class ConsoleBackendConfig(BackendConfig):
    """
    Console backend configuration.

    Attributes:
        color: Enable ANSI colored output
        include_context: Render context key/values after the message
        max_message_length: Maximum message length before truncation
    """
    color: bool = True
    include_context: bool = True
    max_message_length: int = 1000


class FileBackendConfig(BackendConfig):
    """
    File backend configuration.

    Attributes:
        path: Log file path
        format: Output format (text or json)
        max_size_mb: Maximum file size in MB before rotation
        backup_count: Number of rotated files to keep
        buffer_size: Records buffered before a write
        flush_interval: Flush interval in seconds
    """
    path: str = "logs/venuelink.log"
    format: str = "text"
    max_size_mb: int = 100
    backup_count: int = 5
    buffer_size: int = 256
    flush_interval: float = 1.0

    def validate(self) -> None:
        super().validate()
        if self.format not in {"text", "json"}:
            raise ValueError(f"Invalid format: {self.format}")
        if self.max_size_mb <= 0:
            raise ValueError("max_size_mb must be positive")
        if self.backup_count < 0:
            raise ValueError("backup_count cannot be negative")


class PerformanceConfig(Struct, frozen=True):
    """
    Dispatch settings for HFTLogger.

    Attributes:
        buffer_size: Ring buffer size for pending records
        batch_size: Records dispatched per loop iteration
        dispatch_interval: Sleep when the buffer is empty, in seconds
    """
    buffer_size: int = 10000
    batch_size: int = 50
    dispatch_interval: float = 0.005

    def validate(self) -> None:
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.dispatch_interval <= 0:
            raise ValueError("dispatch_interval must be positive")


class LoggingConfig(Struct, frozen=True):
    """
    Complete logging configuration.

    Attributes:
        environment: Environment name (dev, prod, test)
        console: Console backend configuration
        file: File backend configuration
        performance: Dispatch settings
    """
    environment: str = "dev"
    console: Optional[ConsoleBackendConfig] = None
    file: Optional[FileBackendConfig] = None
    performance: Optional[PerformanceConfig] = None

    def validate(self) -> None:
        if self.environment not in {"dev", "prod", "test", "staging"}:
            raise ValueError(f"Invalid environment: {self.environment}")
        if self.console:
            self.console.validate()
        if self.file:
            self.file.validate()
        if self.performance:
            self.performance.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        """Build from the `logging` section of config.yaml."""
        return msgspec.convert(data, cls, strict=False)

    @classmethod
    def default_development(cls) -> "LoggingConfig":
        return cls(
            environment="dev",
            console=ConsoleBackendConfig(min_level="DEBUG"),
            file=FileBackendConfig(min_level="INFO"),
            performance=PerformanceConfig()
        )

    @classmethod
    def default_production(cls) -> "LoggingConfig":
        return cls(
            environment="prod",
            console=ConsoleBackendConfig(min_level="WARNING", color=False),
            file=FileBackendConfig(min_level="INFO", format="json"),
            performance=PerformanceConfig(buffer_size=50000, batch_size=200)
        )
