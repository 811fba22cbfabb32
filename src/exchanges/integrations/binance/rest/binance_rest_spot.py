"""
Binance Spot REST API

Thin typed wrapper over RestCaller for the endpoints the trading core and
the series cache depend on. Responses are decoded straight into msgspec
structs; conversions to unified types live in binance.utils.

Base URL: https://api.binance.com
Authentication: HMAC-SHA256 query signature, key in X-MBX-APIKEY
"""

import asyncio
from decimal import Decimal
from typing import List, Optional

import aiohttp

from config.structs import NetworkConfig, VenueConfig
from exchanges.integrations.binance.structs.exchange import (
    BinanceAccountResponse, BinanceCancelResponse, BinanceExchangeInfoResponse,
    BinanceListenKeyResponse, BinanceOrderResponse, BinanceServerTimeResponse
)
from exchanges.integrations.binance.utils import format_decimal
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from infrastructure.networking.http import HTTPMethod, HmacSigner, RestCaller, VenueClock, get_session_state
from infrastructure.networking.http.structs import ErrorCallback
from .errors import BinanceResponseProcessor, map_error

BINANCE_SPOT_URL = "https://api.binance.com"


class BinanceSpotRest:
    """
    Args:
        config: Venue configuration (URL, credentials, recv window)
        clock: Venue clock used for signed timestamps
        network_config: HTTP timeouts
        error_callback: Receives every venue business error
        session: Pre-built aiohttp session (tests)
    """

    def __init__(self, config: VenueConfig, clock: VenueClock,
                 network_config: Optional[NetworkConfig] = None,
                 error_callback: Optional[ErrorCallback] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 logger: Optional[HFTLoggerInterface] = None):
        self.config = config
        self.clock = clock
        self.logger = logger or get_exchange_logger(config.name, 'rest')
        self.session_state = get_session_state(config.name)
        self.signer = HmacSigner(config.credentials.api_key, config.credentials.secret_key,
                                 clock, recv_window=config.recv_window)
        self._caller = RestCaller(
            venue=config.name,
            base_url=config.base_url or BINANCE_SPOT_URL,
            network_config=network_config,
            signer=self.signer,
            error_mapper=map_error,
            response_processor=BinanceResponseProcessor(self.session_state, "spot", self.logger),
            error_callback=error_callback,
            session_state=self.session_state,
            session=session,
            logger=self.logger,
        )

    async def _request(self, method: HTTPMethod, path: str, **kwargs):
        pause = self.session_state.pause_remaining()
        if pause > 0:
            await asyncio.sleep(pause)
        return await self._caller.request(method, path, **kwargs)

    def set_error_callback(self, callback: Optional[ErrorCallback]) -> None:
        self._caller.error_callback = callback

    async def close(self) -> None:
        await self._caller.close()

    # Market data

    async def get_server_time(self) -> int:
        response = await self._request(HTTPMethod.GET, '/api/v3/time', result_type=BinanceServerTimeResponse)
        return response.serverTime

    async def get_exchange_info(self, symbol: Optional[str] = None) -> BinanceExchangeInfoResponse:
        params = {'symbol': symbol} if symbol else None
        return await self._request(HTTPMethod.GET, '/api/v3/exchangeInfo', params=params,
                                   result_type=BinanceExchangeInfoResponse)

    async def get_klines(self, symbol: str, interval: str, start_time: Optional[int] = None,
                         end_time: Optional[int] = None, limit: int = 1000) -> List[list]:
        """Raw rows: [openTime, open, high, low, close, volume, closeTime, quoteVolume, ...]."""
        params = {'symbol': symbol, 'interval': interval, 'limit': limit,
                  'startTime': start_time, 'endTime': end_time}
        return await self._request(HTTPMethod.GET, '/api/v3/klines', params=params, result_type=List[list])

    # Account

    async def get_account(self) -> BinanceAccountResponse:
        return await self._request(HTTPMethod.GET, '/api/v3/account', signed=True,
                                   result_type=BinanceAccountResponse)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[BinanceOrderResponse]:
        params = {'symbol': symbol} if symbol else None
        return await self._request(HTTPMethod.GET, '/api/v3/openOrders', params=params, signed=True,
                                   result_type=List[BinanceOrderResponse])

    # Trading

    async def place_order(self, symbol: str, side: str, order_type: str, client_order_id: str,
                          price: Decimal, quantity: Decimal, time_in_force: Optional[str] = 'GTC'
                          ) -> BinanceOrderResponse:
        params = {
            'symbol': symbol,
            'side': side,
            'type': order_type,
            'newClientOrderId': client_order_id,
            'price': format_decimal(price),
            'quantity': format_decimal(quantity),
            # LIMIT_MAKER rejects timeInForce
            'timeInForce': time_in_force if order_type == 'LIMIT' else None,
            'newOrderRespType': 'RESULT',
        }
        return await self._request(HTTPMethod.POST, '/api/v3/order', params=params, signed=True,
                                   result_type=BinanceOrderResponse)

    async def cancel_order(self, symbol: str, order_id: Optional[int] = None,
                           client_order_id: Optional[str] = None) -> BinanceCancelResponse:
        params = {'symbol': symbol, 'orderId': order_id, 'origClientOrderId': client_order_id}
        return await self._request(HTTPMethod.DELETE, '/api/v3/order', params=params, signed=True,
                                   result_type=BinanceCancelResponse)

    async def cancel_open_orders(self, symbol: str) -> List[BinanceCancelResponse]:
        return await self._request(HTTPMethod.DELETE, '/api/v3/openOrders', params={'symbol': symbol},
                                   signed=True, result_type=List[BinanceCancelResponse])

    async def get_order(self, symbol: str, order_id: Optional[int] = None,
                        client_order_id: Optional[str] = None) -> BinanceOrderResponse:
        params = {'symbol': symbol, 'orderId': order_id, 'origClientOrderId': client_order_id}
        return await self._request(HTTPMethod.GET, '/api/v3/order', params=params, signed=True,
                                   result_type=BinanceOrderResponse)

    # User data stream

    async def create_listen_key(self) -> str:
        response = await self._request(HTTPMethod.POST, '/api/v3/userDataStream', api_key_only=True,
                                       result_type=BinanceListenKeyResponse)
        return response.listenKey

    async def keep_alive_listen_key(self, listen_key: str) -> None:
        await self._request(HTTPMethod.PUT, '/api/v3/userDataStream', params={'listenKey': listen_key},
                            api_key_only=True)

    async def delete_listen_key(self, listen_key: str) -> None:
        await self._request(HTTPMethod.DELETE, '/api/v3/userDataStream', params={'listenKey': listen_key},
                            api_key_only=True)
