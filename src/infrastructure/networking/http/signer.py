"""
HMAC-SHA256 request signer.

Signed requests get `timestamp` and `recvWindow` appended, the url-encoded
query is signed with the secret, and the signature is appended as the last
parameter. The API key travels in a header.
"""

import hashlib
import hmac
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

from infrastructure.exceptions.system import NotConfiguredError
from .clock import VenueClock


class HmacSigner:
    """
    Stateless apart from key material and the clock reference.

    Args:
        api_key: Venue API key
        secret_key: Venue API secret
        clock: Venue clock supplying signed timestamps
        recv_window: Request validity window in milliseconds
        api_key_header: Header carrying the key
    """

    def __init__(self, api_key: str, secret_key: str, clock: VenueClock,
                 recv_window: int = 10000, api_key_header: str = 'X-MBX-APIKEY'):
        self._api_key = api_key
        self._secret_key = secret_key
        self.clock = clock
        self.recv_window = recv_window
        self.api_key_header = api_key_header

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key) and bool(self._secret_key)

    def auth_headers(self) -> Dict[str, str]:
        """Headers for key-only endpoints (listen key, ...)."""
        if not self._api_key:
            raise NotConfiguredError(f"{self.clock.venue}: API key is not configured")
        return {self.api_key_header: self._api_key}

    def sign(self, params: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, str], str]:
        """
        Returns:
            (headers, encoded query string including the signature)

        Raises:
            NotConfiguredError: If key or secret is missing
            ClockNotInitializedError: If the venue clock was never synchronized
        """
        if not self.is_configured:
            raise NotConfiguredError(f"{self.clock.venue}: API key/secret not configured")

        signed_params = {k: self._format_value(v) for k, v in (params or {}).items() if v is not None}
        signed_params['timestamp'] = self.clock.now_ms()
        signed_params['recvWindow'] = self.recv_window

        query = urlencode(signed_params)
        signature = hmac.new(
            self._secret_key.encode('utf-8'),
            query.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

        return self.auth_headers(), f"{query}&signature={signature}"

    @staticmethod
    def _format_value(value: Any) -> Any:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return value
