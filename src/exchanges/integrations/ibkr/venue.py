"""
IBKR venue over a locally running TWS / IB Gateway.

Startup (see VenueHub.start):
    1. open the gateway session; every (re)connect subscribes account
       updates for the first managed account and resubscribes market data
    2. load contract details + market rule per configured contract
    3. global cancel
    4. wait for the first AccountDownloadEnd
    5. request open orders so any survivor reports its state

Balances: TotalCashBalance for configured currencies, portfolio positions
for configured symbols. The gateway reports no frozen amounts; orders
reserve theirs client-side. Order status has no per-order query, so each
working order's poll asks the gateway to replay open orders.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set

from config.structs import BalanceConfig, ContractConfig, IbkrConfig
from exchanges.core.market_session import DEPTH, TICKER, MarketSession
from exchanges.core.venue_hub import VenueHub
from exchanges.integrations.ibkr.order import IbkrOrder
from exchanges.integrations.ibkr.tws_client import TwsClient
from exchanges.integrations.ibkr.utils import (
    bar_size, details_to_instrument, history_duration, now_ms, parse_bar_time, status_to_snapshot,
    to_contract,
)
from exchanges.structs import Instrument, InstrumentId, Kline
from exchanges.structs.enums import RespCode
from infrastructure.error_handling.suppression import ErrorSuppressor
from infrastructure.exceptions.exchange import ExchangeBusinessError, ExchangeTimeoutError
from infrastructure.exceptions.system import ConfigurationError, InitializationError, NotReadyError
from infrastructure.logging import HFTLoggerInterface
from infrastructure.networking.tcp import IncomingMessage
from infrastructure.networking.tcp.client import OpenConnection
from infrastructure.networking.tcp.messages import (
    TICK_ASK, TICK_ASK_SIZE, TICK_BID, TICK_BID_SIZE, TICK_DELAYED_ASK, TICK_DELAYED_BID,
    TICK_DELAYED_LAST, TICK_LAST, AccountValueMessage, Contract, ErrorMessage, MarketRuleMessage,
    OpenOrderMessage, OrderStatusMessage, PortfolioValueMessage, TickPriceMessage, TickSizeMessage,
)

CASH_BALANCE_KEY = "TotalCashBalance"
ACCOUNT_READY_TIMEOUT = 60.0

_BID_TICKS = (TICK_BID, TICK_DELAYED_BID)
_ASK_TICKS = (TICK_ASK, TICK_DELAYED_ASK)
_LAST_TICKS = (TICK_LAST, TICK_DELAYED_LAST)


class QuoteFeed:
    """Top-of-book state of one market data subscription."""

    __slots__ = ('market', 'contract', 'req_id', 'bid_price', 'bid_size', 'ask_price', 'ask_size')

    def __init__(self, market: MarketSession, contract: Contract):
        self.market = market
        self.contract = contract
        self.req_id: Optional[int] = None
        self.bid_price = Decimal(0)
        self.bid_size = Decimal(0)
        self.ask_price = Decimal(0)
        self.ask_size = Decimal(0)

    def on_tick_price(self, msg: TickPriceMessage) -> None:
        price = msg.price or Decimal(0)
        size = msg.size or Decimal(0)
        if msg.tick_type in _LAST_TICKS:
            if price > 0:
                self.market.on_ticker(price)
            return
        if price <= 0 or size <= 0:
            return
        if msg.tick_type in _BID_TICKS:
            self.bid_price, self.bid_size = price, size
        elif msg.tick_type in _ASK_TICKS:
            self.ask_price, self.ask_size = price, size
        else:
            return
        self._publish()

    def on_tick_size(self, msg: TickSizeMessage) -> None:
        size = msg.size or Decimal(0)
        if size <= 0:
            return
        if msg.tick_type == TICK_BID_SIZE:
            self.bid_size = size
        elif msg.tick_type == TICK_ASK_SIZE:
            self.ask_size = size
        else:
            return
        self._publish()

    def _publish(self) -> None:
        if self.bid_price > 0 and self.bid_size > 0 and self.ask_price > 0 and self.ask_size > 0:
            self.market.on_quote((self.bid_price, self.bid_size), (self.ask_price, self.ask_size))


class IbkrVenue(VenueHub):

    def __init__(self, config: IbkrConfig,
                 balance_config: Optional[BalanceConfig] = None,
                 tws: Optional[TwsClient] = None,
                 open_connection: Optional[OpenConnection] = None,
                 poll_interval: float = 10.0,
                 account_ready_timeout: float = ACCOUNT_READY_TIMEOUT,
                 logger: Optional[HFTLoggerInterface] = None):
        super().__init__('ibkr', balance_config, config.catalog_refresh_hour, logger)
        self.config = config
        self.tws = tws or TwsClient(config.connection, open_connection=open_connection)
        self.poll_interval = poll_interval
        self.account_ready_timeout = account_ready_timeout
        self.account = ""

        self._currencies = {ccy.upper() for ccy in config.currencies}
        self._symbols = {cc.symbol for cc in config.contracts}
        self._account_ready = asyncio.Event()
        self._contracts: Dict[InstrumentId, Contract] = {}
        self._contract_configs: Dict[InstrumentId, ContractConfig] = {}
        self._feeds: Dict[InstrumentId, QuoteFeed] = {}
        self._feeds_by_req: Dict[int, QuoteFeed] = {}
        self._feed_tasks: Set[asyncio.Task] = set()
        self.suppressor = ErrorSuppressor(self.logger)

        self._handler_token = self.tws.register_handler(None, self._on_message)
        self._connect_token = self.tws.register_connect_callback(self._on_connected)

    # -- startup steps --

    async def _init_auth(self) -> None:
        if not self.config.contracts:
            raise ConfigurationError("ibkr: no contracts configured")
        await self.tws.start(wait_ready=True)

    async def _fetch_catalog(self) -> List[Instrument]:
        instruments = []
        rules: Dict[int, MarketRuleMessage] = {}
        for cc in self.config.contracts:
            inst, contract = await self._load_contract(cc, rules)
            self._contracts[inst.id] = contract
            self._contract_configs[inst.id] = cc
            instruments.append(inst)
            self.logger.info(f"Loaded contract {cc.symbol}", instrument=inst.id, tick=str(inst.tick_size),
                             lot=str(inst.lot_size))
        return instruments

    async def _load_contract(self, cc: ContractConfig, rules: Dict[int, MarketRuleMessage]):
        code, reply = await self.tws.req_contract_details(to_contract(cc))
        if code != RespCode.OK:
            raise ExchangeTimeoutError(408, f"contract details for {cc.symbol} timed out")
        if isinstance(reply, ErrorMessage):
            raise ExchangeBusinessError(400, f"contract details for {cc.symbol}: {reply.message}",
                                        api_code=reply.code)
        if not reply:
            raise ConfigurationError(f"ibkr: no contract matches {cc.symbol}/{cc.currency}")
        if len(reply) > 1:
            raise ConfigurationError(f"ibkr: contract {cc.symbol}/{cc.currency} is ambiguous "
                                     f"({len(reply)} matches)")

        details = reply[0]
        rule = None
        rule_id = details.rule_for_exchange(cc.exchange)
        if rule_id is not None:
            rule = rules.get(rule_id)
            if rule is None:
                code, rule = await self.tws.req_market_rule(rule_id)
                if code != RespCode.OK:
                    raise ExchangeTimeoutError(408, f"market rule {rule_id} timed out")
                rules[rule_id] = rule
        return details_to_instrument(details, rule, self.config.time_zone), details.contract

    async def _cancel_all_open(self) -> None:
        await self.tws.req_global_cancel()
        self.logger.info("Global cancel sent")

    async def _load_account(self) -> None:
        try:
            await asyncio.wait_for(self._account_ready.wait(), self.account_ready_timeout)
        except asyncio.TimeoutError:
            raise InitializationError(f"ibkr: account data for {self.account or '?'} not received") from None
        self.logger.info("Account loaded", account=self.account, currencies=len(self.ledger.get_all()))

    async def _open_streams(self) -> None:
        # Account updates and market data ride the gateway session itself
        await self.tws.req_open_orders()

    async def _close_connections(self) -> None:
        for task in list(self._feed_tasks):
            task.cancel()
        await asyncio.gather(*self._feed_tasks, return_exceptions=True)
        self.tws.unregister_handler(self._handler_token)
        self.tws.unregister_connect_callback(self._connect_token)
        if self.tws.is_ready:
            for feed in self._feeds.values():
                if feed.req_id is not None:
                    await self.tws.cancel_market_data(feed.req_id)
            if self.account:
                await self.tws.req_account_updates(self.account, subscribe=False)
        self._feeds_by_req.clear()
        await self.tws.stop()

    def _connection_ok(self) -> bool:
        return self.tws.is_ready

    def _contract_for(self, instrument: Instrument) -> Optional[ContractConfig]:
        return self._contract_configs.get(instrument.id)

    # -- gateway session --

    async def _on_connected(self) -> None:
        if not self.tws.accounts:
            self.logger.error("Gateway reported no managed accounts")
            return
        self.account = self.tws.accounts[0]
        await self.tws.req_account_updates(self.account)
        self.logger.info(f"Subscribed account updates for {self.account}")

        # Request ids restart with every session
        self._feeds_by_req.clear()
        for feed in list(self._feeds.values()):
            feed.req_id = None
            await self._subscribe(feed)

    def _on_message(self, msg_id: IncomingMessage, message: Any) -> None:
        if msg_id in (IncomingMessage.TICK_PRICE, IncomingMessage.TICK_SIZE):
            feed = self._feeds_by_req.get(message.request_id)
            if feed is None:
                return
            if msg_id == IncomingMessage.TICK_PRICE:
                feed.on_tick_price(message)
            else:
                feed.on_tick_size(message)
        elif msg_id == IncomingMessage.ORDER_STATUS:
            self._on_order_status(message)
        elif msg_id == IncomingMessage.OPEN_ORDER:
            self._on_open_order(message)
        elif msg_id == IncomingMessage.ACCOUNT_VALUE:
            self._on_account_value(message)
        elif msg_id == IncomingMessage.PORTFOLIO_VALUE:
            self._on_portfolio_value(message)
        elif msg_id == IncomingMessage.ACCOUNT_DOWNLOAD_END:
            if message.account == self.account and not self._account_ready.is_set():
                self.logger.info(f"Account download complete for {self.account}")
                self._account_ready.set()

    def _on_order_status(self, msg: OrderStatusMessage) -> None:
        if not self.route_snapshot(status_to_snapshot(msg)):
            self.logger.debug(f"Status for untracked order {msg.order_id}: {msg.status}")

    def _on_open_order(self, msg: OpenOrderMessage) -> None:
        order = self._orders.get(str(msg.order_id))
        if isinstance(order, IbkrOrder):
            order.on_open_order(msg)

    def _on_account_value(self, msg: AccountValueMessage) -> None:
        if msg.account != self.account or msg.key != CASH_BALANCE_KEY:
            return
        currency = msg.currency.upper()
        if currency not in self._currencies:
            return
        self._refresh_balance(currency, msg.value)

    def _on_portfolio_value(self, msg: PortfolioValueMessage) -> None:
        if msg.account != self.account or msg.contract.symbol not in self._symbols:
            return
        self._refresh_balance(msg.contract.symbol.upper(), msg.position)

    def _refresh_balance(self, currency: str, value: Any) -> None:
        try:
            rights = Decimal(value)
        except (InvalidOperation, TypeError):
            self.suppressor.log_error(f"balance_{currency}", f"Unparseable {currency} balance {value!r}")
            return
        self.ledger.refresh(currency, rights, None, now_ms())

    # -- market data --

    async def _subscribe(self, feed: QuoteFeed) -> bool:
        try:
            req_id, code, error = await self.tws.req_market_data(feed.contract)
        except NotReadyError as e:
            self.logger.warning(f"Market data for {feed.contract.symbol} not requested: {e}")
            return False
        if code != RespCode.OK or error is not None:
            reason = f"{error.code} {error.message}" if error is not None else code.name
            self.logger.error(f"Market data subscribe failed for {feed.contract.symbol}: {reason}")
            # An unanswered request may still stream; keep routing it
            if error is None:
                feed.req_id = req_id
                self._feeds_by_req[req_id] = feed
            return False
        feed.req_id = req_id
        self._feeds_by_req[req_id] = feed
        self.logger.info(f"Subscribed market data for {feed.contract.symbol}", req_id=req_id)
        return True

    async def _resubscribe(self, instrument_id: InstrumentId) -> None:
        feed = self._feeds.get(instrument_id)
        if feed is None:
            return
        old_req_id, feed.req_id = feed.req_id, None
        if old_req_id is not None:
            self._feeds_by_req.pop(old_req_id, None)
            if self.tws.is_ready:
                await self.tws.cancel_market_data(old_req_id)
        await self._subscribe(feed)

    async def _seed_last_price(self, feed: QuoteFeed) -> None:
        """Last daily close, so a market opened outside trading hours has a price."""
        what = 'AGGTRADES' if feed.contract.sec_type == 'CRYPTO' else 'TRADES'
        try:
            code, reply = await self.tws.req_historical_data(
                feed.contract, datetime.now(timezone.utc), "3 D", "1 day", what)
        except NotReadyError:
            return
        if code != RespCode.OK or isinstance(reply, ErrorMessage) or reply is None or not reply.bars:
            self.logger.warning(f"No price history for {feed.contract.symbol}")
            return
        # Not marked fresh: only live ticks make the market ready
        if feed.market.last_price is None:
            feed.market.last_price = reply.bars[-1].close

    def _create_market(self, instrument: Instrument) -> MarketSession:
        contract = self._contracts[instrument.id]
        symbol = instrument.symbol or instrument.base

        market = MarketSession(
            self.name, instrument.id, self.registry,
            channels={TICKER: f"{symbol}@last", DEPTH: f"{symbol}@quote"},
            reset_subscription=lambda _channel: self._resubscribe(instrument.id),
            connection_ok=self._connection_ok,
        )
        feed = QuoteFeed(market, contract)
        self._feeds[instrument.id] = feed

        async def open_feed() -> None:
            await self._seed_last_price(feed)
            await self._subscribe(feed)

        task = asyncio.get_running_loop().create_task(open_feed())
        self._feed_tasks.add(task)
        task.add_done_callback(self._feed_tasks.discard)
        return market

    def _create_order(self, instrument: Instrument, **kwargs) -> IbkrOrder:
        cc = self._contract_configs.get(instrument.id)
        return IbkrOrder(self.tws,
                         contract=self._contracts[instrument.id],
                         order_id=self.tws.next_order_id(),
                         time_in_force=cc.time_in_force if cc else "GTC",
                         account=self.account,
                         instrument=instrument,
                         registry=self.registry,
                         ledger=self.ledger,
                         poll_interval=self.poll_interval,
                         **kwargs)

    # -- history --

    async def get_klines(self, symbol: str, t0: int, t1: int, interval_sec: int) -> List[Kline]:
        """
        Midpoint bars with open time in [t0, t1]. The gateway anchors history
        at an end time and a duration, so t1 is the end of the query.

        Raises:
            ValueError: Unknown symbol or unsupported interval
            ExchangeTimeoutError: Gateway did not answer
            ExchangeBusinessError: Gateway rejected the query
        """
        inst = self.registry.resolve(symbol)
        if inst is None or inst.id not in self._contracts:
            raise ValueError(f"ibkr: unknown instrument {symbol}")
        size = bar_size(interval_sec)
        end = datetime.fromtimestamp(t1 / 1000, tz=timezone.utc)
        code, reply = await self.tws.req_historical_data(
            self._contracts[inst.id], end, history_duration((t1 - t0) // 1000), size, 'MIDPOINT')
        if code != RespCode.OK:
            raise ExchangeTimeoutError(408, f"history for {symbol} timed out")
        if isinstance(reply, ErrorMessage):
            raise ExchangeBusinessError(400, reply.message, api_code=reply.code)

        klines = []
        for bar in reply.bars:
            open_time = parse_bar_time(bar.time, inst.time_zone)
            if t0 <= open_time <= t1:
                klines.append(Kline(open_time=open_time, open=float(bar.open), high=float(bar.high),
                                    low=float(bar.low), close=float(bar.close),
                                    volume=float(bar.volume), quote_volume=0.0))
        return klines
