"""
Venue-synchronized millisecond clock.

Signed venue requests carry a timestamp that must fall inside the venue's
receive window, so local time is corrected by a skew measured against the
venue's server-time endpoint. One clock exists per venue for the whole
process (see get_venue_clock).
"""

import threading
import time
from typing import Awaitable, Callable, Dict, Optional

from infrastructure.exceptions.system import ClockNotInitializedError


def local_time_ms() -> int:
    return int(time.time() * 1000)


class VenueClock:
    """
    Local clock plus a venue skew offset.

    Args:
        venue: Venue name, used in error messages
        jitter_ms: Re-measurements within this distance of the current skew are ignored
        required: When True, now_ms() refuses to answer before the first measurement
        time_source: Local millisecond clock (injectable for tests)
    """

    def __init__(self, venue: str, jitter_ms: int = 250, required: bool = True,
                 time_source: Optional[Callable[[], int]] = None):
        self.venue = venue
        self.jitter_ms = jitter_ms
        self.required = required
        self._time_source = time_source or local_time_ms
        self._skew_ms = 0
        self._initialized = False
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def skew_ms(self) -> int:
        return self._skew_ms

    def local_ms(self) -> int:
        return self._time_source()

    def now_ms(self) -> int:
        """
        Venue time in milliseconds.

        Raises:
            ClockNotInitializedError: If no skew was measured yet and the clock is required
        """
        if not self._initialized and self.required:
            raise ClockNotInitializedError(f"{self.venue}: server time not synchronized yet")
        return self._time_source() + self._skew_ms

    def update_skew(self, server_ms: int, local_ms: Optional[int] = None) -> bool:
        """Apply a measurement; returns True when the stored skew changed."""
        if local_ms is None:
            local_ms = self._time_source()
        offset = server_ms - local_ms
        with self._lock:
            if self._initialized and abs(offset - self._skew_ms) <= self.jitter_ms:
                return False
            self._skew_ms = offset
            self._initialized = True
            return True

    async def sync(self, fetch_server_time: Callable[[], Awaitable[int]]) -> int:
        """
        Measure skew around one server-time call, using the round-trip midpoint
        as the local reference. Returns the current skew.
        """
        sent_at = self._time_source()
        server_ms = await fetch_server_time()
        received_at = self._time_source()
        self.update_skew(server_ms, (sent_at + received_at) // 2)
        return self._skew_ms


_clocks: Dict[str, VenueClock] = {}
_clocks_lock = threading.Lock()


def get_venue_clock(venue: str) -> VenueClock:
    """Process-wide clock for venue, created on first access."""
    with _clocks_lock:
        clock = _clocks.get(venue)
        if clock is None:
            clock = VenueClock(venue)
            _clocks[venue] = clock
        return clock


def reset_venue_clocks() -> None:
    with _clocks_lock:
        _clocks.clear()
