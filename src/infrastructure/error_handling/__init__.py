"""
Error Handling

Retry/backoff composition for callers that own a retry policy, and a
sliding-window suppressor that keeps repeated venue errors from flooding
the logs.
"""

from .handlers import (
    ComposableErrorHandler,
    ErrorSeverity,
    ErrorContext,
)
from .suppression import ErrorSuppressor

__all__ = [
    'ComposableErrorHandler',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorSuppressor',
]
