"""
Price-safe order placement and the roster of live orders for one instrument.
"""

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from config.structs import ContractConfig
from exchanges.core.market_session import MarketSession
from exchanges.core.order_engine import DealObserver, OrderEngine
from exchanges.structs import InstrumentId, Side
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger

if TYPE_CHECKING:
    from exchanges.core.venue_hub import VenueHub

OrderFactory = Callable[..., OrderEngine]


class TraderSession:

    def __init__(self, hub: 'VenueHub', market: MarketSession, instrument_id: InstrumentId,
                 order_factory: OrderFactory,
                 contract: Optional[ContractConfig] = None,
                 sweep_interval: float = 5.0,
                 logger: Optional[HFTLoggerInterface] = None):
        self.hub = hub
        self.market = market
        self.instrument_id = instrument_id
        self.order_factory = order_factory
        self.contract = contract
        self.sweep_interval = sweep_interval
        self.logger = logger or get_exchange_logger(hub.name, f'trader.{instrument_id}')

        self._orders: Dict[str, OrderEngine] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def unready_reason(self) -> Optional[str]:
        if not self.hub.is_ready():
            return "venue not ready"
        reason = self.market.unready_reason()
        if reason:
            return f"market {reason}"
        if self.hub.registry.get(self.instrument_id) is None:
            return "instrument not in catalog"
        return None

    def is_ready(self) -> bool:
        return self.unready_reason() is None

    def check_price_guard(self, price: Decimal, side: Side) -> Optional[str]:
        """Reason string when price lies outside the envelope around the best price."""
        if self.contract is None:
            return None
        abs_tol = Decimal(str(self.contract.max_price_dist_abs))
        rel_tol = Decimal(str(self.contract.max_price_dist_rel))
        if abs_tol == 0 and rel_tol == 0:
            return None

        if side == Side.BUY:
            best = self.market.orderbook.best_bid
            if best is None:
                return None
            floor = best - max(abs_tol, best * rel_tol)
            if price < floor:
                return f"buy price {price} below guard {floor} (best bid {best})"
        else:
            best = self.market.orderbook.best_ask
            if best is None:
                return None
            ceiling = best + max(abs_tol, best * rel_tol)
            if price > ceiling:
                return f"sell price {price} above guard {ceiling} (best ask {best})"
        return None

    def make_order(self, price: Decimal, size: Decimal, side: Side, post_only: bool = False,
                   reduce_only: bool = False, purpose: str = "",
                   observer: Optional[DealObserver] = None) -> Optional[OrderEngine]:
        """
        Align, validate and launch a new order.

        Returns None (after logging why) when the session is not ready, the
        price guard rejects the price, or the size is under the minimum.
        """
        reason = self.unready_reason()
        if reason:
            self.logger.warning(f"make_order refused: {reason}", purpose=purpose)
            return None

        registry = self.hub.registry
        best_bid, best_ask = self.market.best()
        aligned_price = registry.align_price(self.instrument_id, price, side, post_only, best_bid, best_ask)

        reason = self.check_price_guard(aligned_price, side)
        if reason:
            self.logger.warning(f"make_order refused: {reason}", purpose=purpose)
            return None

        min_size = registry.min_size(self.instrument_id, aligned_price)
        if size < min_size:
            self.logger.warning(f"make_order refused: size {size} below minimum {min_size}", purpose=purpose)
            return None
        aligned_size = registry.align_size(self.instrument_id, size)

        order = self.order_factory(instrument=registry.require(self.instrument_id), side=side,
                                   price=aligned_price, size=aligned_size,
                                   post_only=post_only, reduce_only=reduce_only, purpose=purpose)
        if observer is not None:
            order.add_observer(observer)
        self._orders[order.client_id] = order
        self.hub.track_order(order)
        order.start()
        return order

    def orders(self) -> List[OrderEngine]:
        return list(self._orders.values())

    def live_orders(self) -> List[OrderEngine]:
        return [o for o in self._orders.values() if not o.is_done]

    async def cancel_all_orders(self) -> None:
        orders = self.live_orders()
        if not orders:
            return
        results = await asyncio.gather(*(o.cancel() for o in orders), return_exceptions=True)
        for order, result in zip(orders, results):
            if isinstance(result, Exception):
                self.logger.warning(f"Cancel failed for {order.client_id}: {result}")

    async def sweep(self) -> int:
        """Drop done orders from the roster. Returns how many were removed."""
        done = [o for o in self._orders.values() if o.is_done]
        for order in done:
            self._orders.pop(order.client_id, None)
            self.hub.untrack_order(order)
            try:
                await order.uninit()
            except Exception as e:
                self.logger.error(f"Order uninit failed for {order.client_id}: {e}")
        return len(done)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep()

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for order in list(self._orders.values()):
            await order.stop()
