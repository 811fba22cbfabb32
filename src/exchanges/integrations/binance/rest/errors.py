"""
Binance error mapping and response post-processing.

Every response passes through the processor: used-weight headers are
published into the shared session status map, and a -1003 (too many
requests) envelope pauses further calls on the venue for a few seconds.
"""

from typing import Mapping, Optional

import msgspec

from exchanges.integrations.binance.structs.exchange import BinanceErrorResponse
from infrastructure.exceptions.exchange import (
    AuthenticationError, ExchangeBusinessError, ExchangeRestError, InsufficientBalanceError,
    InvalidParameterError, InvalidSymbolError, ListenKeyError, OrderNotFoundError,
    RateLimitErrorRest, RecvWindowError, SignatureError, UnknownOrderError
)
from infrastructure.logging import HFTLoggerInterface
from infrastructure.networking.http.session_state import SessionState

WEIGHT_HEADER_PREFIX = 'x-mbx-used-weight-'
ORDER_COUNT_HEADER_PREFIX = 'x-mbx-order-count-'

TOO_MANY_REQUESTS = -1003
UNKNOWN_ORDER = -2011
NO_SUCH_ORDER = -2013
RATE_LIMIT_PAUSE = 3.0

_decoder = msgspec.json.Decoder(BinanceErrorResponse)


def decode_error(raw: bytes) -> Optional[BinanceErrorResponse]:
    # Error envelopes start with {"code": ...; avoid decoding large bodies
    if b'"code"' not in raw[:20]:
        return None
    try:
        return _decoder.decode(raw)
    except (msgspec.DecodeError, msgspec.ValidationError):
        return None


def map_error(status: int, raw: bytes) -> Optional[ExchangeRestError]:
    """Map a {code, msg} envelope to the exchange exception family."""
    envelope = decode_error(raw)
    if envelope is None or envelope.code == 0:
        return None
    code = envelope.code
    message = envelope.msg

    if code == TOO_MANY_REQUESTS or status in (418, 429):
        return RateLimitErrorRest(status, f"Binance rate limit: {message}", code, retry_after=RATE_LIMIT_PAUSE)
    if code == UNKNOWN_ORDER:
        return UnknownOrderError(status, f"Binance unknown order: {message}", code)
    if code == NO_SUCH_ORDER:
        return OrderNotFoundError(status, f"Binance order does not exist: {message}", code)
    if code == -1021:
        return RecvWindowError(status, f"Binance timestamp outside recvWindow: {message}", code)
    if code == -1022:
        return SignatureError(status, f"Binance signature invalid: {message}", code)
    if code in (-2014, -2015):
        return AuthenticationError(status, f"Binance API key rejected: {message}", code)
    if code == -1121:
        return InvalidSymbolError(status, f"Binance invalid symbol: {message}", code)
    if code == -2010 and 'insufficient' in message.lower():
        return InsufficientBalanceError(status, f"Binance insufficient balance: {message}", code)
    if code in (-1125,):
        return ListenKeyError(status, f"Binance listen key: {message}", code)
    if -1199 <= code <= -1100:
        return InvalidParameterError(status, f"Binance parameter error: {message}", code)
    return ExchangeBusinessError(status, f"Binance API error {code}: {message}", code)


class BinanceResponseProcessor:
    """Publishes weight usage and paces the venue after -1003."""

    def __init__(self, session_state: SessionState, api_type: str = "spot",
                 logger: Optional[HFTLoggerInterface] = None):
        self.session_state = session_state
        self.api_type = api_type
        self.logger = logger

    def __call__(self, status: int, headers: Mapping[str, str], raw: bytes) -> None:
        for key, value in headers.items():
            lower = key.lower()
            if lower.startswith(WEIGHT_HEADER_PREFIX) or lower.startswith(ORDER_COUNT_HEADER_PREFIX):
                try:
                    usage = float(value)
                except ValueError:
                    continue
                self.session_state.update_status(f"{self.api_type}:{lower}", usage)
                if self.logger is not None:
                    self.logger.metric("binance_weight_usage", usage, header=lower, api=self.api_type)

        if status >= 400:
            envelope = decode_error(raw)
            if envelope is not None and envelope.code == TOO_MANY_REQUESTS:
                self.session_state.pause_for(RATE_LIMIT_PAUSE)
                if self.logger is not None:
                    self.logger.warning("Binance request rate exceeded, pausing", pause_s=RATE_LIMIT_PAUSE)
