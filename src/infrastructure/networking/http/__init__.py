"""
HTTP networking: venue clock, HMAC signer, shared session state and the
typed REST caller.
"""

from .structs import HTTPMethod
from .clock import VenueClock, get_venue_clock
from .signer import HmacSigner
from .session_state import SessionState, get_session_state
from .rest_caller import RestCaller

__all__ = [
    'HTTPMethod',
    'VenueClock',
    'get_venue_clock',
    'HmacSigner',
    'SessionState',
    'get_session_state',
    'RestCaller',
]
