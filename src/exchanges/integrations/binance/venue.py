"""
Binance spot venue.

Startup (see VenueHub.start):
    1. sync the venue clock against /api/v3/time
    2. load exchangeInfo into the instrument registry
    3. cancel every open order left from a previous run
    4. seed balances from /api/v3/account
    5. open the user data stream and the public market stream

Public market data runs on one combined-stream socket; every market session
subscribes <symbol>@ticker and <symbol>@depth10@100ms on it.
"""

import asyncio
from decimal import Decimal
from typing import Callable, List, Optional

from config.structs import BalanceConfig, NetworkConfig, VenueConfig, WebSocketConfig
from exchanges.core.market_session import DEPTH, TICKER, MarketSession
from exchanges.core.venue_hub import VenueHub
from exchanges.integrations.binance.order import BinanceSpotOrder
from exchanges.integrations.binance.rest.binance_rest_spot import BinanceSpotRest
from exchanges.integrations.binance.structs.exchange import BinanceDepthPayload, BinanceTickerPayload
from exchanges.integrations.binance.utils import rest_to_instrument, ws_depth_levels
from exchanges.integrations.binance.ws.user_stream import BinanceUserStream
from exchanges.structs import Instrument
from infrastructure.exceptions.exchange import ExchangeRestError
from infrastructure.exceptions.system import InitializationError
from infrastructure.logging import HFTLoggerInterface
from infrastructure.networking.http import VenueClock, get_venue_clock
from infrastructure.networking.websocket import StreamHandle, WsConnection, WsStreamRouter


class BinanceSpotVenue(VenueHub):

    def __init__(self, config: VenueConfig,
                 ws_config: Optional[WebSocketConfig] = None,
                 network_config: Optional[NetworkConfig] = None,
                 balance_config: Optional[BalanceConfig] = None,
                 rest: Optional[BinanceSpotRest] = None,
                 clock: Optional[VenueClock] = None,
                 connector=None,
                 error_callback: Optional[Callable[[Exception], None]] = None,
                 logger: Optional[HFTLoggerInterface] = None):
        super().__init__(config.name, balance_config, config.catalog_refresh_hour, logger)
        self.config = config
        self.error_callback = error_callback
        self.ws_config = ws_config or WebSocketConfig()
        self.clock = clock or get_venue_clock(config.name)
        self.rest = rest or BinanceSpotRest(config, self.clock, network_config=network_config)
        self.rest.set_error_callback(self.notify_error)

        base_ws = config.websocket_url.rstrip('/')
        self.public_ws = WsConnection(f"{base_ws}/stream", self.ws_config, venue=config.name,
                                      connector=connector)
        self.router = WsStreamRouter(self.public_ws, venue=config.name)
        self.user_stream = BinanceUserStream(self.rest, base_ws, self.ws_config, self.ledger,
                                             self.route_snapshot, connector=connector,
                                             error_callback=self.notify_error)
        self._handles: List[StreamHandle] = []

    # -- startup steps --

    async def _init_auth(self) -> None:
        if not self.config.credentials.has_private_api:
            raise InitializationError(f"{self.name}: API credentials are not configured")
        skew = await self.clock.sync(self.rest.get_server_time)
        self.logger.info("Venue clock synchronized", skew_ms=skew)

    async def _fetch_catalog(self) -> List[Instrument]:
        info = await self.rest.get_exchange_info()
        instruments = []
        for symbol in info.symbols:
            if symbol.status != 'TRADING':
                continue
            inst = rest_to_instrument(symbol)
            if inst is not None:
                instruments.append(inst)
        return instruments

    async def _cancel_all_open(self) -> None:
        open_orders = await self.rest.get_open_orders()
        symbols = sorted({order.symbol for order in open_orders})
        for symbol in symbols:
            try:
                await self.rest.cancel_open_orders(symbol)
                self.logger.info(f"Cancelled open orders on {symbol}")
            except ExchangeRestError as e:
                self.logger.error(f"Failed to cancel open orders on {symbol}: {e}")
                raise

    async def _load_account(self) -> None:
        account = await self.rest.get_account()
        ts = account.updateTime or self.clock.now_ms()
        for item in account.balances:
            free = Decimal(item.free)
            locked = Decimal(item.locked)
            if free == 0 and locked == 0:
                continue
            self.ledger.refresh(item.asset.upper(), free + locked, locked, ts)
        self.logger.info("Account loaded", currencies=len(self.ledger.get_all()))

    async def _open_streams(self) -> None:
        await self.user_stream.start()
        await self.public_ws.start()

    async def _close_connections(self) -> None:
        for handle in self._handles:
            self.router.unsubscribe(handle)
        self._handles.clear()
        await asyncio.gather(self.user_stream.stop(), self.public_ws.stop(), return_exceptions=True)
        await self.rest.close()

    def _connection_ok(self) -> bool:
        return self.public_ws.is_connected

    # -- factories --

    def _create_market(self, instrument: Instrument) -> MarketSession:
        symbol = instrument.symbol.lower()
        ticker_stream = f"{symbol}@ticker"
        depth_stream = f"{symbol}@depth10@100ms"

        market = MarketSession(
            self.name, instrument.id, self.registry,
            channels={TICKER: ticker_stream, DEPTH: depth_stream},
            reset_subscription=self.router.reset,
            connection_ok=self._connection_ok,
        )

        def on_ticker(payload: BinanceTickerPayload) -> None:
            market.on_ticker(Decimal(payload.c))

        def on_depth(payload: BinanceDepthPayload) -> None:
            market.on_depth(ws_depth_levels(payload.asks), ws_depth_levels(payload.bids))

        self._handles.append(self.router.subscribe(ticker_stream, BinanceTickerPayload, on_ticker))
        self._handles.append(self.router.subscribe(depth_stream, BinanceDepthPayload, on_depth))
        return market

    def _create_order(self, instrument: Instrument, **kwargs) -> BinanceSpotOrder:
        return BinanceSpotOrder(self.rest, instrument=instrument, registry=self.registry,
                                ledger=self.ledger, poll_interval=self.config.poll_interval, **kwargs)
