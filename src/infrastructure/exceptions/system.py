from typing import Optional


class BaseSystemError(Exception):
    """Default exception."""
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InitializationError(BaseSystemError):
    pass


class ConfigurationError(Exception):
    """Configuration-specific exception for setup errors."""

    def __init__(self, message: str, setting_name: Optional[str] = None):
        self.setting_name = setting_name
        super().__init__(message)


class ClockNotInitializedError(BaseSystemError):
    """Signed timestamp requested before the first server time sync."""
    pass


class NotConfiguredError(BaseSystemError):
    """Authenticated operation requested without key material."""
    pass


class NotReadyError(BaseSystemError):
    """Session handshake has not completed yet."""
    pass


class ConnectionClosedError(BaseSystemError):
    """Connection went away while a caller was waiting on it."""
    pass


class ProtocolFatalError(BaseSystemError):
    """Wire-level failure that requires a reconnect."""
    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
