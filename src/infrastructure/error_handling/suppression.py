"""
Repeated-error suppression.

Venue errors tend to arrive in storms (a rejected stream, a flapping
gateway). Per error key, the first occurrences inside a sliding window are
logged quietly; only when the count exceeds the allowance does the error
surface at ERROR level.
"""

import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from infrastructure.logging.interfaces import HFTLoggerInterface


class ErrorSuppressor:
    """
    Sliding-window counter per error key.

    Args:
        logger: Logger receiving the (possibly downgraded) messages
        period: Window length in seconds
        max_count: Occurrences inside the window that stay silent
        clock: Time source, monotonic seconds
    """

    def __init__(self, logger: HFTLoggerInterface, period: float = 300.0, max_count: int = 5,
                 clock: Optional[Callable[[], float]] = None):
        self.logger = logger
        self.period = period
        self.max_count = max_count
        self._clock = clock or time.monotonic
        self._occurrences: Dict[str, Deque[float]] = {}

    def should_report(self, key: str) -> bool:
        """Record one occurrence of key; True when it exceeds the silent allowance."""
        now = self._clock()
        window = self._occurrences.setdefault(key, deque())
        window.append(now)
        while window and now - window[0] > self.period:
            window.popleft()
        return len(window) > self.max_count

    def log_error(self, key: str, msg: str, **context) -> bool:
        """Log msg at ERROR once the key is storming, DEBUG otherwise. Returns whether it surfaced."""
        if self.should_report(key):
            self.logger.error(msg, error_key=key, **context)
            return True
        self.logger.debug(msg, error_key=key, **context)
        return False

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._occurrences.clear()
        else:
            self._occurrences.pop(key, None)
