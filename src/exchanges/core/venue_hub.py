"""
Top-level facade per venue connection.

start() runs the startup steps strictly in order and only then flips the
hub ready; trader sessions refuse orders until then, so anything left
resting from a previous run is cancelled before the first new order.

    _init_auth -> _load_catalog -> _cancel_all_open -> _load_account -> _open_streams -> ready

Concrete venues implement the steps plus the market/order factories.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from config.structs import BalanceConfig, ContractConfig
from exchanges.core.balance_ledger import BalanceLedger
from exchanges.core.instrument_registry import InstrumentRegistry
from exchanges.core.market_session import MarketSession
from exchanges.core.order_engine import OrderEngine
from exchanges.core.trader_session import TraderSession
from exchanges.structs import Instrument, InstrumentId, OrderSnapshot
from infrastructure.error_handling import ComposableErrorHandler, ErrorContext
from infrastructure.exceptions.exchange import AuthenticationError, ExchangeBusinessError, ExchangeRestError
from infrastructure.exceptions.system import InitializationError
from infrastructure.logging import HFTLoggerInterface, LoggingTimer, get_exchange_logger


def _catalog_retryable(error: Exception) -> bool:
    # Everything the venue reports except bad credentials
    return isinstance(error, ExchangeBusinessError) and not isinstance(error, AuthenticationError)


class VenueHub(ABC):

    def __init__(self, name: str, balance_config: Optional[BalanceConfig] = None,
                 catalog_refresh_hour: int = 8,
                 logger: Optional[HFTLoggerInterface] = None):
        self.name = name
        self.logger = logger or get_exchange_logger(name, 'hub')
        self.registry = InstrumentRegistry(name)
        self.ledger = BalanceLedger(name, balance_config)
        self.catalog_refresh_hour = catalog_refresh_hour

        self._ready = False
        self._markets: Dict[InstrumentId, MarketSession] = {}
        self._traders: Dict[InstrumentId, TraderSession] = {}
        # client_id -> order, for routing push snapshots
        self._orders: Dict[str, OrderEngine] = {}
        self._catalog_task: Optional[asyncio.Task] = None
        self._error_handler = ComposableErrorHandler(self.logger, max_retries=3, base_delay=2.0,
                                                     component_name=f"{name}_hub")
        self.startup_steps: List[str] = []
        # Operator hook receiving every venue business error
        self.error_callback: Optional[Callable[[Exception], None]] = None

    # -- startup steps --

    @abstractmethod
    async def _init_auth(self) -> None:
        """Initialize signer and clock (or the gateway session)."""

    @abstractmethod
    async def _fetch_catalog(self) -> List[Instrument]:
        """Download instrument rules."""

    @abstractmethod
    async def _cancel_all_open(self) -> None:
        """Cancel every open order this account owns."""

    @abstractmethod
    async def _load_account(self) -> None:
        """Seed the balance ledger from an authoritative snapshot."""

    @abstractmethod
    async def _open_streams(self) -> None:
        """Open websocket/account channels."""

    @abstractmethod
    async def _close_connections(self) -> None:
        pass

    @abstractmethod
    def _create_market(self, instrument: Instrument) -> MarketSession:
        pass

    @abstractmethod
    def _create_order(self, instrument: Instrument, **kwargs) -> OrderEngine:
        pass

    def _connection_ok(self) -> bool:
        return True

    async def _load_catalog(self) -> None:
        instruments = await self._error_handler.handle_with_retry(
            self._fetch_catalog,
            ErrorContext(operation="load_catalog", component=self.name, retry_if=_catalog_retryable))
        if instruments is None:
            raise InitializationError(f"{self.name}: instrument catalog unavailable")
        self.registry.refresh(instruments)

    async def start(self) -> None:
        self._ready = False
        with LoggingTimer(self.logger, f"{self.name}_startup") as timer:
            for step in (self._init_auth, self._load_catalog, self._cancel_all_open,
                         self._load_account, self._open_streams):
                self.startup_steps.append(step.__name__)
                await step()
        self._ready = True
        self._catalog_task = asyncio.create_task(self._catalog_loop())
        self.logger.info(f"{self.name} ready", startup_ms=round(timer.elapsed_ms, 1),
                         instruments=len(self.registry))

    async def stop(self) -> None:
        """Stop accepting orders, cancel everything, close connections."""
        self._ready = False
        if self._catalog_task is not None:
            self._catalog_task.cancel()
            await asyncio.gather(self._catalog_task, return_exceptions=True)
            self._catalog_task = None

        for trader in self._traders.values():
            await trader.cancel_all_orders()
        try:
            await self._cancel_all_open()
        except Exception as e:
            self.logger.error(f"Cancel-all on shutdown failed: {e}")

        for trader in self._traders.values():
            await trader.stop()
        for market in self._markets.values():
            await market.stop()
        await self._close_connections()
        self.logger.info(f"{self.name} stopped")

    def set_error_callback(self, callback: Optional[Callable[[Exception], None]]) -> None:
        self.error_callback = callback

    def notify_error(self, error: Exception) -> None:
        if self.error_callback is None:
            return
        try:
            self.error_callback(error)
        except Exception as e:
            self.logger.error("Error callback failed", error=str(e))

    def is_ready(self) -> bool:
        return self._ready

    # -- daily catalog refresh --

    def _seconds_until_refresh(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now()
        target = now.replace(hour=self.catalog_refresh_hour, minute=0, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()

    async def _catalog_loop(self) -> None:
        while True:
            await asyncio.sleep(self._seconds_until_refresh())
            try:
                await self._load_catalog()
            except (InitializationError, ExchangeRestError, ValueError) as e:
                self.logger.error(f"Daily catalog refresh failed: {e}")

    # -- sessions --

    def make_market(self, symbol: str) -> MarketSession:
        inst = self.registry.resolve(symbol)
        if inst is None:
            raise KeyError(f"{self.name}: unknown instrument {symbol}")
        market = self._markets.get(inst.id)
        if market is None:
            market = self._create_market(inst)
            self._markets[inst.id] = market
            market.start()
        return market

    def make_trader(self, symbol: str, contract: Optional[ContractConfig] = None) -> TraderSession:
        market = self.make_market(symbol)
        trader = self._traders.get(market.instrument_id)
        if trader is None:
            inst = self.registry.require(market.instrument_id)
            trader = TraderSession(self, market, inst.id,
                                   order_factory=self._create_order,
                                   contract=contract or self._contract_for(inst))
            self._traders[inst.id] = trader
            trader.start()
        return trader

    def _contract_for(self, instrument: Instrument) -> Optional[ContractConfig]:
        return None

    def markets(self) -> Dict[InstrumentId, MarketSession]:
        return dict(self._markets)

    def traders(self) -> Dict[InstrumentId, TraderSession]:
        return dict(self._traders)

    # -- order routing --

    def track_order(self, order: OrderEngine) -> None:
        self._orders[order.client_id] = order

    def untrack_order(self, order: OrderEngine) -> None:
        self._orders.pop(order.client_id, None)

    def route_snapshot(self, snapshot: OrderSnapshot) -> bool:
        """Deliver a pushed snapshot to the order it belongs to."""
        order = self._orders.get(snapshot.client_id) if snapshot.client_id else None
        if order is None:
            return False
        order.apply_snapshot(snapshot)
        return True
