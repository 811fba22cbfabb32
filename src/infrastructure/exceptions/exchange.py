class ExchangeRestError(Exception):
    """Base exception for all venue REST API errors."""
    def __init__(self, code: int, message: str, api_code: int | None = None) -> None:
        self.api_code = api_code
        self.message = message
        self.status_code = code
        super().__init__(f"HTTP {code}: {message}")


# Transport errors (retryable, never fatal to an order)
class ExchangeConnectionRestError(ExchangeRestError):
    """Network connection errors that may be temporary."""
    pass


class ExchangeServerError(ExchangeConnectionRestError):
    """Server-side errors (5xx) without a venue error envelope."""
    pass


class ExchangeTimeoutError(ExchangeConnectionRestError):
    """Request timeout errors."""
    pass


# Decode errors
class ExchangeDecodeError(ExchangeRestError):
    """Response body could not be decoded into the expected shape."""
    def __init__(self, code: int, message: str, body: bytes = b"") -> None:
        super().__init__(code, message)
        self.body = body


# Venue-reported business errors (payload code != ok)
class ExchangeBusinessError(ExchangeRestError):
    """Venue rejected the request with an error code."""
    pass


class RateLimitErrorRest(ExchangeBusinessError):
    """Rate limit exceeded errors."""
    def __init__(self, code: int, message: str, api_code: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(code, message, api_code)
        self.retry_after = retry_after

    def __str__(self):
        return f"RateLimitError: {self.status_code} - {self.message} - {self.api_code} - {self.retry_after}"


class AuthenticationError(ExchangeBusinessError):
    """Authentication failed - API key, signature, or permission issues."""
    pass


class RecvWindowError(ExchangeBusinessError):
    """Timestamp/recvWindow validation errors - usually a clock skew problem."""
    pass


class SignatureError(AuthenticationError):
    """Invalid signature - usually configuration issue."""
    pass


class InvalidParameterError(ExchangeBusinessError):
    """Invalid request parameters - client-side error."""
    pass


class OrderNotFoundError(ExchangeBusinessError):
    """Order not found for given ID."""
    pass


class UnknownOrderError(OrderNotFoundError):
    """Cancel raced with a fill or an earlier cancel; the order is already terminal."""
    pass


class InsufficientBalanceError(ExchangeBusinessError):
    """Insufficient balance for operation."""
    pass


class InvalidSymbolError(ExchangeBusinessError):
    """Invalid or non-existent trading symbol."""
    pass


class ListenKeyError(ExchangeBusinessError):
    """User data stream key expired or does not exist."""
    pass
