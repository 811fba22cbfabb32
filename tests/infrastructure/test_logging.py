"""
Structured logger: level filtering, context, async dispatch and backends.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

import asyncio
import logging
from typing import List

import msgspec
import pytest

from infrastructure.logging import (
    ConsoleBackendConfig, FileBackend, FileBackendConfig, HFTLogger, LoggerFactory,
    LoggingConfig, LoggingTimer, LogBackend, LogLevel, LogRecord, LogType, PerformanceConfig,
)


class RecordingBackend(LogBackend):

    def __init__(self, min_level: LogLevel = LogLevel.DEBUG):
        super().__init__("recording", min_level)
        self.records: List[LogRecord] = []
        self.sync_records: List[LogRecord] = []

    def should_handle(self, record: LogRecord) -> bool:
        return record.level >= self.min_level

    async def write(self, record: LogRecord) -> None:
        self.records.append(record)

    def write_sync(self, record: LogRecord) -> None:
        self.sync_records.append(record)

    async def flush(self) -> None:
        pass


def _logger(backend: LogBackend, buffer_size: int = 100) -> HFTLogger:
    return HFTLogger("test.logger", [backend],
                     PerformanceConfig(buffer_size=buffer_size, batch_size=10, dispatch_interval=0.001))


class TestHFTLogger:

    def test_without_loop_writes_synchronously(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        logger.info("hello", bucket="2024-01-02")
        assert backend.sync_records[0].message == "hello"
        assert backend.sync_records[0].context == {"bucket": "2024-01-02"}

    @pytest.mark.asyncio
    async def test_dispatched_through_buffer(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        logger.info("queued")
        assert backend.records == []
        await logger.shutdown()
        assert [r.message for r in backend.records] == ["queued"]

    @pytest.mark.asyncio
    async def test_warnings_bypass_buffer(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        logger.warning("now")
        assert backend.sync_records[0].level == LogLevel.WARNING
        await logger.shutdown()

    def test_level_filtering(self):
        backend = RecordingBackend(LogLevel.WARNING)
        logger = _logger(backend)
        logger.info("dropped")
        logger.error("kept")
        assert [r.message for r in backend.sync_records] == ["kept"]
        assert not logger.isEnabledFor(logging.DEBUG)
        assert logger.isEnabledFor(logging.ERROR)

    def test_context_lifts_venue_fields(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        logger.set_context(venue="binance")
        logger.info("placed", symbol="BTCUSDT", order_id="42", purpose="entry")
        record = backend.sync_records[0]
        assert (record.venue, record.symbol, record.order_id) == ("binance", "BTCUSDT", "42")
        assert record.context == {"purpose": "entry"}

    def test_python_logging_compatibility(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        logger.log(logging.WARNING, "retry %d of %d", 2, 3)
        assert backend.sync_records[0].message == "retry 2 of 3"

    @pytest.mark.asyncio
    async def test_metrics_and_counters(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        logger.counter("ws_reconnect", venue="binance")
        logger.latency("rest_call", 12.5)
        await logger.shutdown()
        metrics = {r.metric_name: r.metric_value for r in backend.records if r.log_type == LogType.METRIC}
        assert metrics == {"ws_reconnect_count": 1.0, "rest_call_latency_ms": 12.5}

    @pytest.mark.asyncio
    async def test_full_buffer_drops(self):
        backend = RecordingBackend()
        logger = _logger(backend, buffer_size=2)
        for i in range(5):
            logger.debug(f"m{i}")
        assert logger.get_stats()["buffer_dropped"] == 3
        await logger.shutdown()

    def test_failing_backend_disables_itself(self):
        class Broken(RecordingBackend):
            def write_sync(self, record):
                raise OSError("disk full")

        backend = Broken()
        logger = _logger(backend)
        for _ in range(10):
            logger.error("x")
        assert not backend.enabled

    def test_rejects_wrong_config_type(self):
        with pytest.raises(TypeError):
            HFTLogger("x", [], {"buffer_size": 1})


class TestLoggingTimer:

    def test_records_latency(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        with LoggingTimer(logger, "startup") as timer:
            pass
        assert timer.elapsed_ms >= 0

    def test_logs_failure(self):
        backend = RecordingBackend()
        logger = _logger(backend)
        with pytest.raises(RuntimeError):
            with LoggingTimer(logger, "load_catalog"):
                raise RuntimeError("boom")
        assert backend.sync_records[-1].message == "load_catalog failed"
        assert backend.sync_records[-1].context["error_type"] == "RuntimeError"


class TestFileBackend:

    def test_json_sync_write(self, tmp_path):
        path = tmp_path / "logs" / "out.log"
        backend = FileBackend(FileBackendConfig(path=str(path), format="json"))
        logger = _logger(backend)
        logger.error("gap pulled", venue="binance", rows=1440)

        line = path.read_text().strip()
        data = msgspec.json.decode(line)
        assert data["message"] == "gap pulled"
        assert data["venue"] == "binance"
        assert data["context"] == {"rows": "1440"}

    @pytest.mark.asyncio
    async def test_buffered_text_write(self, tmp_path):
        path = tmp_path / "out.log"
        backend = FileBackend(FileBackendConfig(path=str(path), min_level="DEBUG", buffer_size=100,
                                                flush_interval=60))
        logger = _logger(backend)
        logger.info("first")
        logger.info("second")
        await logger.shutdown()
        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("test.logger: first")

    def test_metrics_not_written(self, tmp_path):
        backend = FileBackend(FileBackendConfig(path=str(tmp_path / "m.log")))
        assert not backend.should_handle(LogRecord.create_metric("x", "m", 1.0))


class TestLoggerFactory:

    def test_cached_per_name(self):
        assert LoggerFactory.create_logger("cache.test") is LoggerFactory.create_logger("cache.test")

    def test_explicit_config(self):
        config = LoggingConfig(environment="test",
                               console=ConsoleBackendConfig(min_level="ERROR", color=False),
                               performance=PerformanceConfig())
        logger = LoggerFactory.create_logger("explicit.config.test", config)
        assert logger.min_level == LogLevel.ERROR

    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            LoggingConfig(environment="qa").validate()
        with pytest.raises(ValueError):
            FileBackendConfig(format="xml").validate()

    def test_from_dict(self):
        config = LoggingConfig.from_dict({"environment": "prod", "file": {"format": "json", "max_size_mb": 10}})
        assert config.file.format == "json"
        assert config.console is None
