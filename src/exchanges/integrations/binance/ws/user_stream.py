"""
Binance user data stream.

The private socket is addressed by a listen key obtained over REST and kept
alive every keep_alive_interval seconds. When a keepalive fails the key is
replaced and the carrier is forced to reconnect; the url provider hands the
carrier the new key on its next connect.

Events:
    executionReport          -> OrderSnapshot routed to the order by client id
    outboundAccountPosition  -> balance ledger refresh (rights = free + locked)
"""

import asyncio
import logging
from decimal import Decimal
from typing import Callable, Optional

import msgspec

from config.structs import WebSocketConfig
from exchanges.core.balance_ledger import BalanceLedger
from exchanges.integrations.binance.rest.binance_rest_spot import BinanceSpotRest
from exchanges.integrations.binance.structs.exchange import (
    BinanceAccountPositionEvent, BinanceEventHeader, BinanceExecutionReport
)
from exchanges.integrations.binance.utils import ws_to_snapshot
from exchanges.structs import OrderSnapshot
from infrastructure.error_handling.suppression import ErrorSuppressor
from infrastructure.exceptions.exchange import ExchangeRestError, ListenKeyError
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from infrastructure.networking.websocket import WsConnection
from infrastructure.networking.websocket.structs import Frame

SnapshotRouter = Callable[[OrderSnapshot], bool]


class BinanceUserStream:

    def __init__(self, rest: BinanceSpotRest, websocket_url: str, config: WebSocketConfig,
                 ledger: BalanceLedger, route_snapshot: SnapshotRouter,
                 keep_alive_interval: float = 600.0,
                 connector=None,
                 error_callback: Optional[Callable[[Exception], None]] = None,
                 logger: Optional[HFTLoggerInterface] = None):
        self.rest = rest
        self.websocket_url = websocket_url.rstrip('/')
        self.ledger = ledger
        self.route_snapshot = route_snapshot
        self.keep_alive_interval = keep_alive_interval
        self.error_callback = error_callback
        self.logger = logger or get_exchange_logger('binance', 'ws.user')
        self.suppressor = ErrorSuppressor(self.logger)

        self.listen_key: Optional[str] = None
        self._keep_alive_task: Optional[asyncio.Task] = None

        self._header_decoder = msgspec.json.Decoder(BinanceEventHeader)
        self._report_decoder = msgspec.json.Decoder(BinanceExecutionReport)
        self._position_decoder = msgspec.json.Decoder(BinanceAccountPositionEvent)

        self.connection = WsConnection(
            url=self.websocket_url,
            config=config,
            on_frame=self.on_frame,
            venue='binance',
            connector=connector,
            url_provider=self._stream_url,
            logger=self.logger,
        )

    async def _stream_url(self) -> str:
        if self.listen_key is None:
            self.listen_key = await self.rest.create_listen_key()
            self.logger.info(f"Created listen key {self.listen_key[:8]}...")
        return f"{self.websocket_url}/ws/{self.listen_key}"

    async def start(self) -> None:
        # Obtain the key up front so startup fails loudly on bad credentials
        await self._stream_url()
        await self.connection.start()
        if self._keep_alive_task is None or self._keep_alive_task.done():
            self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())

    async def stop(self) -> None:
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
            await asyncio.gather(self._keep_alive_task, return_exceptions=True)
            self._keep_alive_task = None
        await self.connection.stop()
        if self.listen_key:
            try:
                await self.rest.delete_listen_key(self.listen_key)
            except ExchangeRestError as e:
                self.logger.warning(f"Failed to delete listen key: {e}")
            self.listen_key = None

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    async def keep_alive(self) -> bool:
        """One keepalive round; replaces the key and reconnects on failure."""
        if self.listen_key is None:
            return False
        try:
            await self.rest.keep_alive_listen_key(self.listen_key)
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug("Listen key kept alive")
            return True
        except ExchangeRestError as e:
            self.logger.warning(f"Listen key keepalive failed, rotating key: {e}")

        self.listen_key = None
        await self.connection.force_reconnect()
        return False

    async def _keep_alive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keep_alive_interval)
            await self.keep_alive()

    def on_frame(self, raw: Frame) -> None:
        data = raw.encode('utf-8') if isinstance(raw, str) else raw
        try:
            header = self._header_decoder.decode(data)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            self.suppressor.log_error("user_header", f"Dropping undecodable user frame: {e}")
            return

        try:
            if header.e == 'executionReport':
                self._on_execution_report(self._report_decoder.decode(data))
            elif header.e == 'outboundAccountPosition':
                self._on_account_position(self._position_decoder.decode(data))
            elif header.e == 'listenKeyExpired':
                self.logger.warning("Listen key expired, reconnecting with a new key")
                if self.error_callback is not None:
                    self.error_callback(ListenKeyError(0, "listen key expired"))
                self.listen_key = None
                asyncio.get_running_loop().create_task(self.connection.force_reconnect())
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            self.suppressor.log_error(f"user_{header.e}", f"Failed to decode {header.e}: {e}")

    def _on_execution_report(self, report: BinanceExecutionReport) -> None:
        snapshot = ws_to_snapshot(report)
        if not self.route_snapshot(snapshot):
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"No tracked order for report {snapshot.client_id}",
                                  symbol=report.s, status=report.X)

    def _on_account_position(self, event: BinanceAccountPositionEvent) -> None:
        for item in event.B:
            free = Decimal(item.f)
            locked = Decimal(item.l)
            self.ledger.refresh(item.a.upper(), free + locked, locked, event.E)
