"""
REST Caller

One typed JSON round-trip per call over a shared aiohttp session. Errors
are normalized into three classes: transport (ExchangeConnectionRestError
family), decode (ExchangeDecodeError) and venue business errors (mapped by
the venue's error mapper). The caller never retries; retry policy belongs
to whoever owns the operation.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import urlencode

import aiohttp
import msgspec

from config.structs import NetworkConfig
from infrastructure.exceptions.exchange import (
    ExchangeRestError, ExchangeBusinessError, ExchangeConnectionRestError,
    ExchangeServerError, ExchangeTimeoutError, ExchangeDecodeError
)
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from .session_state import SessionState, get_session_state
from .signer import HmacSigner
from .structs import HTTPMethod, ResponseProcessor, ErrorMapper, ErrorCallback

T = TypeVar('T')


class RestCaller:
    """
    Args:
        venue: Venue name (logging, session state lookup)
        base_url: Prefix for all request paths
        network_config: Timeouts
        signer: Signer for signed requests
        error_mapper: Maps error bodies to venue exceptions
        response_processor: Inspects every response (rate-limit headers, embedded envelopes)
        error_callback: Externally installed hook receiving every business error
        cookies: Cookies attached to every request, in addition to the shared jar
        session: Pre-built aiohttp session (tests, shared pools)
    """

    def __init__(
        self,
        venue: str,
        base_url: str,
        network_config: Optional[NetworkConfig] = None,
        signer: Optional[HmacSigner] = None,
        error_mapper: Optional[ErrorMapper] = None,
        response_processor: Optional[ResponseProcessor] = None,
        error_callback: Optional[ErrorCallback] = None,
        cookies: Optional[Dict[str, str]] = None,
        session_state: Optional[SessionState] = None,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[HFTLoggerInterface] = None,
    ):
        self.venue = venue
        self.base_url = base_url.rstrip('/')
        self.network_config = network_config or NetworkConfig()
        self.signer = signer
        self.error_mapper = error_mapper
        self.response_processor = response_processor
        self.error_callback = error_callback
        self.cookies = dict(cookies or {})
        self.session_state = session_state or get_session_state(venue)
        self.logger = logger or get_exchange_logger(venue, 'rest')

        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=100,
                ttl_dns_cache=300,
                keepalive_timeout=30,
            )
            timeout = aiohttp.ClientTimeout(
                total=self.network_config.request_timeout,
                sock_connect=self.network_config.connect_timeout,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                json_serialize=lambda obj: msgspec.json.encode(obj).decode('utf-8'),
                headers={'Accept': 'application/json', 'User-Agent': 'venuelink/1.0'},
            )
            self._owns_session = True
        return self._session

    def _build_url(self, path: str, params: Optional[Dict[str, Any]], signed: bool) -> tuple[str, Dict[str, str]]:
        headers: Dict[str, str] = {}
        if signed:
            if self.signer is None:
                raise ValueError(f"{self.venue}: signed request to {path} without a signer")
            headers, query = self.signer.sign(params)
        else:
            clean = {k: v for k, v in (params or {}).items() if v is not None}
            query = urlencode(clean)
        url = f"{self.base_url}{path}"
        return (f"{url}?{query}" if query else url), headers

    async def request(
        self,
        method: HTTPMethod,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        result_type: Optional[Type[T]] = None,
        signed: bool = False,
        api_key_only: bool = False,
    ) -> T:
        """
        Execute one request and decode the response.

        Raises:
            ExchangeConnectionRestError: Transport failure or non-2xx without an error envelope
            ExchangeTimeoutError: Request timed out
            ExchangeDecodeError: Body does not match result_type
            ExchangeBusinessError: Venue reported an error code
        """
        session = await self._ensure_session()
        url, request_headers = self._build_url(path, params, signed)
        if api_key_only and self.signer is not None:
            request_headers.update(self.signer.auth_headers())
        if headers:
            request_headers.update(headers)

        cookies = {**self.session_state.cookies(), **self.cookies}
        data = msgspec.json.encode(body) if body is not None else None
        if data is not None:
            request_headers.setdefault('Content-Type', 'application/json')

        start = time.perf_counter()
        try:
            async with session.request(method.value, url, data=data, headers=request_headers,
                                       cookies=cookies or None) as response:
                status = response.status
                response_headers = response.headers
                raw = await response.read()
        except asyncio.TimeoutError as e:
            raise ExchangeTimeoutError(408, f"{method.value} {path} timed out") from e
        except (aiohttp.ClientError, OSError) as e:
            raise ExchangeConnectionRestError(0, f"{method.value} {path} failed: {e}") from e

        if self.logger.isEnabledFor(logging.DEBUG):
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.logger.debug(f"REST {method.value} {path} -> {status} in {elapsed_ms:.1f}ms")

        if self.response_processor is not None:
            try:
                self.response_processor(status, response_headers, raw)
            except ExchangeBusinessError as e:
                self._notify_error(e)
                raise

        if status >= 400:
            raise self._map_error(status, raw, method, path)

        return self._decode(status, raw, result_type)

    def _map_error(self, status: int, raw: bytes, method: HTTPMethod, path: str) -> ExchangeRestError:
        mapped = self.error_mapper(status, raw) if self.error_mapper else None
        if mapped is not None:
            self._notify_error(mapped)
            return mapped
        text = raw[:200].decode('utf-8', errors='replace')
        if status >= 500:
            return ExchangeServerError(status, f"{method.value} {path}: {text}")
        return ExchangeConnectionRestError(status, f"{method.value} {path}: {text}")

    def _decode(self, status: int, raw: bytes, result_type: Optional[Type[T]]) -> Any:
        if not raw:
            return None
        try:
            if result_type is None:
                return msgspec.json.decode(raw)
            return msgspec.json.decode(raw, type=result_type)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            raise ExchangeDecodeError(status, f"Invalid response: {e}", raw[:500]) from e

    def _notify_error(self, error: ExchangeRestError) -> None:
        if self.error_callback is None:
            return
        try:
            self.error_callback(error)
        except Exception as e:
            self.logger.error("Error callback failed", error=str(e))

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request(HTTPMethod.GET, path, params=params, **kwargs)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request(HTTPMethod.POST, path, params=params, **kwargs)

    async def put(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request(HTTPMethod.PUT, path, params=params, **kwargs)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request(HTTPMethod.DELETE, path, params=params, **kwargs)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
