"""
Console Backend

Writes text and audit records to stderr. Always synchronous: console output
is cheap and is what operators look at first when something goes wrong.
"""

import sys
from datetime import datetime

from ..interfaces import LogBackend, LogRecord, LogLevel, LogType
from ..structs import ConsoleBackendConfig

_COLORS = {
    LogLevel.DEBUG: "\033[36m",
    LogLevel.INFO: "\033[32m",
    LogLevel.WARNING: "\033[33m",
    LogLevel.ERROR: "\033[31m",
    LogLevel.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


class ConsoleBackend(LogBackend):
    """Plain console backend."""

    def __init__(self, config: ConsoleBackendConfig, name: str = "console"):
        if not isinstance(config, ConsoleBackendConfig):
            raise TypeError(f"Expected ConsoleBackendConfig, got {type(config)}")
        super().__init__(name, LogLevel[config.min_level.upper()])
        self.config = config
        self.enabled = config.enabled
        self.stream = sys.stderr

    def should_handle(self, record: LogRecord) -> bool:
        return record.log_type != LogType.METRIC and record.level >= self.min_level

    async def write(self, record: LogRecord) -> None:
        self.write_sync(record)

    def write_sync(self, record: LogRecord) -> None:
        self.stream.write(self.format(record) + "\n")

    async def flush(self) -> None:
        self.stream.flush()

    def format(self, record: LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.timestamp).strftime("%H:%M:%S.%f")[:-3]
        message = record.message
        if len(message) > self.config.max_message_length:
            message = message[:self.config.max_message_length] + "..."

        tags = [t for t in (record.venue, record.symbol, record.order_id) if t]
        prefix = f"[{'/'.join(tags)}] " if tags else ""
        line = f"{timestamp} {self._level_name(record.level)} {record.logger_name}: {prefix}{message}"

        if self.config.include_context and record.context:
            line += " | " + ", ".join(f"{k}={v}" for k, v in record.context.items())
        return line

    def _level_name(self, level: LogLevel) -> str:
        return f"{level.name:<8}"


class ColorConsoleBackend(ConsoleBackend):
    """Console backend with ANSI level colors."""

    def _level_name(self, level: LogLevel) -> str:
        return f"{_COLORS[level]}{level.name:<8}{_RESET}"
