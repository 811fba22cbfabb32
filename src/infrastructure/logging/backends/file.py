"""
File Backend

Buffered file logging with async I/O through aiofiles, size-based rotation
and text or JSON output. Records at WARNING and above take the synchronous
path and are appended straight away.
"""

import asyncio
import time
from datetime import datetime
from pathlib import Path
from typing import List

import aiofiles
import aiofiles.os
import msgspec

from ..interfaces import LogBackend, LogRecord, LogLevel, LogType
from ..structs import FileBackendConfig


class FileBackend(LogBackend):
    """
    File logging backend.

    Accepts only FileBackendConfig struct for configuration.
    """

    def __init__(self, config: FileBackendConfig, name: str = "file"):
        if not isinstance(config, FileBackendConfig):
            raise TypeError(f"Expected FileBackendConfig, got {type(config)}")
        super().__init__(name, LogLevel[config.min_level.upper()])

        self.config = config
        self.file_path = Path(config.path)
        self.format_type = config.format
        self.max_file_size = config.max_size_mb * 1024 * 1024
        self.enabled = config.enabled

        if self.enabled:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)

        self._write_buffer: List[str] = []
        self._last_flush = time.time()
        self._lock = asyncio.Lock()

    def should_handle(self, record: LogRecord) -> bool:
        if record.log_type == LogType.METRIC:
            return False
        return record.level >= self.min_level

    async def write(self, record: LogRecord) -> None:
        async with self._lock:
            self._write_buffer.append(self._format(record))
            now = time.time()
            if (len(self._write_buffer) >= self.config.buffer_size or
                    now - self._last_flush >= self.config.flush_interval):
                await self._flush_buffer()

    def write_sync(self, record: LogRecord) -> None:
        with open(self.file_path, 'a', encoding='utf-8') as f:
            f.write(self._format(record) + '\n')

    async def flush(self) -> None:
        async with self._lock:
            await self._flush_buffer()

    async def _flush_buffer(self) -> None:
        if not self._write_buffer:
            return
        await self._check_rotation()
        async with aiofiles.open(self.file_path, 'a', encoding='utf-8') as f:
            await f.write('\n'.join(self._write_buffer) + '\n')
        self._write_buffer.clear()
        self._last_flush = time.time()

    async def _check_rotation(self) -> None:
        if not self.file_path.exists():
            return
        if await aiofiles.os.path.getsize(self.file_path) < self.max_file_size:
            return
        for i in range(self.config.backup_count - 1, 0, -1):
            old_file = self.file_path.with_suffix(f'.{i}')
            if old_file.exists():
                old_file.replace(self.file_path.with_suffix(f'.{i + 1}'))
        if self.config.backup_count > 0:
            self.file_path.replace(self.file_path.with_suffix('.1'))
        else:
            self.file_path.unlink()

    def _format(self, record: LogRecord) -> str:
        if self.format_type == 'json':
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.timestamp).isoformat()
        message = f"[{timestamp}] {record.level.name} {record.logger_name}: {record.message}"
        if record.context:
            message += " | " + ", ".join(f"{k}={v}" for k, v in record.context.items())
        tags = [f"{k}={v}" for k, v in (("venue", record.venue), ("symbol", record.symbol),
                                        ("order_id", record.order_id)) if v]
        if tags:
            message += " | " + ", ".join(tags)
        return message

    def _format_json(self, record: LogRecord) -> str:
        data = {
            'timestamp': record.timestamp,
            'level': record.level.name,
            'type': record.log_type.name,
            'logger': record.logger_name,
            'message': record.message,
        }
        if record.context:
            data['context'] = {k: str(v) for k, v in record.context.items()}
        for key in ('venue', 'symbol', 'order_id'):
            value = getattr(record, key)
            if value:
                data[key] = value
        return msgspec.json.encode(data).decode()
