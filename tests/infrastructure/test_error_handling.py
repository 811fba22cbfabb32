"""
Unit tests for retry composition and repeated-error suppression.

Covers:
- ComposableErrorHandler retry/backoff and severity classification
- Reconnect and cleanup callbacks
- ErrorSuppressor sliding window
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from infrastructure.error_handling import (
    ComposableErrorHandler,
    ErrorContext,
    ErrorSeverity,
    ErrorSuppressor,
)
from infrastructure.exceptions.exchange import (
    AuthenticationError,
    ExchangeBusinessError,
    ExchangeDecodeError,
    ExchangeRestError,
    ExchangeServerError,
    ExchangeTimeoutError,
    RateLimitErrorRest,
)
from infrastructure.exceptions.system import ConfigurationError, ConnectionClosedError


class TestComposableErrorHandler:
    """Test base error handler functionality"""

    @pytest.fixture
    def mock_logger(self):
        return Mock()

    @pytest.fixture
    def handler(self, mock_logger):
        return ComposableErrorHandler(
            logger=mock_logger,
            max_retries=3,
            base_delay=0.001
        )

    @pytest.fixture
    def error_context(self):
        return ErrorContext(
            operation="load_catalog",
            component="binance",
            metadata={"endpoint": "/api/v3/exchangeInfo"}
        )

    @pytest.mark.asyncio
    async def test_successful_operation_no_retry(self, handler, error_context):
        async def successful_operation():
            return "success"

        result = await handler.handle_with_retry(successful_operation, error_context)
        assert result == "success"
        handler.logger.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_on_recoverable_error(self, handler, error_context):
        call_count = 0

        async def failing_operation():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ExchangeTimeoutError(408, "timeout")
            return "success_after_retries"

        result = await handler.handle_with_retry(failing_operation, error_context)
        assert result == "success_after_retries"
        assert call_count == 3
        assert error_context.attempt == 3
        handler.logger.info.assert_called_once()

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_none(self, handler, error_context):
        operation = AsyncMock(side_effect=ConnectionError("refused"))
        cleanup = AsyncMock()
        error_context.cleanup_callback = cleanup

        assert await handler.handle_with_retry(operation, error_context) is None
        assert operation.await_count == 3
        cleanup.assert_awaited_once()
        handler.logger.counter.assert_called_once()

    @pytest.mark.asyncio
    async def test_critical_error_raises_immediately(self, handler, error_context):
        operation = AsyncMock(side_effect=AuthenticationError(401, "Invalid API-key"))
        with pytest.raises(AuthenticationError):
            await handler.handle_with_retry(operation, error_context)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_if_downgrades_critical_error(self, handler, error_context):
        error_context.retry_if = lambda e: not isinstance(e, AuthenticationError)
        operation = AsyncMock(side_effect=[ExchangeBusinessError(400, "-1000 busy", -1000), "ok"])
        assert await handler.handle_with_retry(operation, error_context) == "ok"
        assert operation.await_count == 2

        operation = AsyncMock(side_effect=AuthenticationError(401, "Invalid API-key"))
        with pytest.raises(AuthenticationError):
            await handler.handle_with_retry(operation, error_context)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_callback_on_transport_error(self, handler, error_context):
        reconnect = AsyncMock()
        error_context.reconnect_callback = reconnect
        operation = AsyncMock(side_effect=[ExchangeServerError(503, "unavailable"), "ok"])

        assert await handler.handle_with_retry(operation, error_context) == "ok"
        reconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_callback_is_logged(self, handler, error_context):
        error_context.reconnect_callback = AsyncMock(side_effect=RuntimeError("still down"))
        operation = AsyncMock(side_effect=[ConnectionError("x"), "ok"])
        assert await handler.handle_with_retry(operation, error_context) == "ok"
        assert any("reconnect" in call.args[0] for call in handler.logger.error.call_args_list)

    @pytest.mark.asyncio
    async def test_explicit_severity_overrides_classification(self, handler, error_context):
        operation = AsyncMock(side_effect=ConnectionError("x"))
        with pytest.raises(ConnectionError):
            await handler.handle_with_retry(operation, error_context, ErrorSeverity.CRITICAL)

    @pytest.mark.asyncio
    async def test_handle_single(self, handler, error_context):
        assert await handler.handle_single(AsyncMock(side_effect=ConnectionError("x")), error_context) is None
        with pytest.raises(ValueError):
            await handler.handle_single(AsyncMock(side_effect=ValueError("bad")), error_context)


class TestErrorClassification:

    @pytest.fixture
    def handler(self):
        return ComposableErrorHandler(Mock())

    @pytest.mark.parametrize("exc, severity", [
        (ValueError("x"), ErrorSeverity.CRITICAL),
        (TypeError("x"), ErrorSeverity.CRITICAL),
        (ConfigurationError("ambiguous contract"), ErrorSeverity.CRITICAL),
        (AuthenticationError(401, "key"), ErrorSeverity.CRITICAL),
        (ExchangeRestError(404, "not found"), ErrorSeverity.CRITICAL),
        (RateLimitErrorRest(429, "slow down"), ErrorSeverity.HIGH),
        (ExchangeDecodeError(200, "bad json"), ErrorSeverity.HIGH),
        (ExchangeRestError(502, "bad gateway"), ErrorSeverity.HIGH),
        (ExchangeTimeoutError(408, "timeout"), ErrorSeverity.MEDIUM),
        (ConnectionClosedError("closed"), ErrorSeverity.MEDIUM),
        (asyncio.TimeoutError(), ErrorSeverity.MEDIUM),
        (RuntimeError("other"), ErrorSeverity.MEDIUM),
    ])
    def test_classify(self, handler, exc, severity):
        assert handler._classify_error(exc) == severity

    def test_backoff_grows_and_caps(self):
        handler = ComposableErrorHandler(Mock(), max_retries=6, base_delay=1.0)
        delays = [handler._calculate_backoff(i) for i in range(1, 7)]
        assert 0.8 <= delays[0] <= 1.2
        assert 3.2 <= delays[2] <= 4.8
        assert delays[-1] <= 12.0

    def test_backoff_honours_retry_after(self):
        handler = ComposableErrorHandler(Mock())
        error = RateLimitErrorRest(429, "slow down", retry_after=7)
        assert handler._calculate_backoff(1, error) == 7.0


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestErrorSuppressor:

    def test_surfaces_only_storms(self):
        logger = Mock()
        clock = FakeClock()
        suppressor = ErrorSuppressor(logger, period=60, max_count=2, clock=clock)

        assert not suppressor.log_error("ws.rejected", "rejected")
        assert not suppressor.log_error("ws.rejected", "rejected")
        assert suppressor.log_error("ws.rejected", "rejected")
        logger.error.assert_called_once_with("rejected", error_key="ws.rejected")
        assert logger.debug.call_count == 2

    def test_window_slides(self):
        clock = FakeClock()
        suppressor = ErrorSuppressor(Mock(), period=60, max_count=1, clock=clock)
        assert not suppressor.should_report("k")
        clock.now = 61
        assert not suppressor.should_report("k")
        assert suppressor.should_report("k")

    def test_keys_are_independent_and_resettable(self):
        suppressor = ErrorSuppressor(Mock(), period=60, max_count=1, clock=FakeClock())
        suppressor.should_report("a")
        assert not suppressor.should_report("b")
        assert suppressor.should_report("a")
        suppressor.reset("a")
        assert not suppressor.should_report("a")
        suppressor.reset()
        assert not suppressor.should_report("b")
