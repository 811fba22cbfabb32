"""
Process-wide HTTP session state: cookie jar and rate-limit status map.

Both are mutated from outside the REST callers (an external login flow
installs cookies; response processors record used weights) and read by
every caller, so access goes through this lock-guarded accessor object.
"""

import threading
import time
from typing import Dict, Optional, Tuple


class SessionState:
    """Cookie jar plus `key -> (value, updated_at)` rate-limit status map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._cookies: Dict[str, str] = {}
        self._status: Dict[str, Tuple[float, float]] = {}
        self._pause_until = 0.0

    def set_cookies(self, cookies: Dict[str, str], replace: bool = False) -> None:
        with self._lock:
            if replace:
                self._cookies = dict(cookies)
            else:
                self._cookies.update(cookies)

    def cookies(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._cookies)

    def update_status(self, key: str, value: float) -> None:
        with self._lock:
            self._status[key] = (value, time.time())

    def status(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._status.get(key)
            return entry[0] if entry else None

    def status_snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {k: v for k, (v, _) in self._status.items()}

    def pause_for(self, seconds: float) -> None:
        """Ask every caller of this venue to hold off for a while (e.g. after a weight ban)."""
        with self._lock:
            self._pause_until = max(self._pause_until, time.monotonic() + seconds)

    def pause_remaining(self) -> float:
        with self._lock:
            return max(0.0, self._pause_until - time.monotonic())


_states: Dict[str, SessionState] = {}
_states_lock = threading.Lock()


def get_session_state(venue: str) -> SessionState:
    """Process-wide session state for a venue."""
    with _states_lock:
        state = _states.get(venue)
        if state is None:
            state = SessionState()
            _states[venue] = state
        return state


def reset_session_states() -> None:
    with _states_lock:
        _states.clear()
