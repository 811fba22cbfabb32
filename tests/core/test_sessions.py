"""
Market readiness/watchdogs and price-safe order placement.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, Mock

import pytest

from config.structs import ContractConfig
from exchanges.core.market_session import DEPTH, TICKER, MarketSession
from exchanges.core.order_engine import OrderEngine
from exchanges.core.trader_session import TraderSession
from exchanges.structs import OrderSnapshot, OrderStatus, Side

D = Decimal


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class IdleOrder(OrderEngine):
    """Order that never hears back from the venue."""

    def __init__(self, **kwargs):
        super().__init__('test', poll_interval=3600, **kwargs)

    async def _send_create(self) -> Optional[str]:
        return "1"

    async def _send_cancel(self) -> Optional[OrderSnapshot]:
        return OrderSnapshot(update_time=1, filled=D(0), status=OrderStatus.CANCELED)

    async def _fetch_snapshot(self) -> Optional[OrderSnapshot]:
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market(registry, clock):
    return MarketSession("test", "BTC_USDT", registry,
                         channels={TICKER: "btcusdt@ticker", DEPTH: "btcusdt@depth"},
                         reset_subscription=Mock(),
                         watchdog_timeouts={TICKER: 30.0, DEPTH: 10.0},
                         clock=clock)


def _feed(market, bid="100", ask="100.1"):
    market.on_ticker(D(bid))
    market.on_depth([(D(ask), D("1"))], [(D(bid), D("1"))])


class TestMarketReadiness:

    def test_not_ready_until_both_feeds_arrive(self, market):
        assert market.unready_reason() == "price stale"
        market.on_ticker(D("100"))
        assert market.unready_reason() == "depth stale"
        market.on_depth([(D("100.1"), D("1"))], [(D("100"), D("1"))])
        assert market.is_ready()
        assert market.best() == (D("100"), D("100.1"))

    def test_crossed_book_is_not_ready(self, market):
        _feed(market, bid="101", ask="100")
        assert market.unready_reason() == "depth stale"

    def test_connection_down(self, registry, clock):
        market = MarketSession("test", "BTC_USDT", registry, channels={TICKER: "t"},
                               connection_ok=lambda: False, clock=clock)
        assert market.unready_reason() == "connection down"

    def test_quote_feed_replaces_top_of_book(self, market):
        market.on_ticker(D("100"))
        market.on_quote((D("99"), D("2")), (D("99.5"), D("3")))
        market.on_quote((D("99.1"), D("1")), (D("99.6"), D("1")))
        assert market.best() == (D("99.1"), D("99.6"))
        assert market.is_ready()

    def test_closed_market(self, clock):
        from exchanges.core.instrument_registry import InstrumentRegistry
        from exchanges.structs import Instrument

        registry = InstrumentRegistry("test")
        registry.refresh([Instrument(base="AAPL", quote="USD", tick_size=D("0.01"), lot_size=D("1"),
                                     min_size=D("1"), symbol="AAPL",
                                     trading_hours="20240325:0930-1600", time_zone="America/New_York")])
        market = MarketSession("test", "AAPL_USD", registry, channels={}, clock=clock)
        market.on_ticker(D("170"))
        assert market.unready_reason() == "market closed"


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_silent_channel_is_reset(self, market, clock):
        watch = market._watches[TICKER]
        market.on_ticker(D("100"))
        assert market.is_fresh(TICKER)

        clock.now += 31
        await market.check_watch(watch)
        assert not market.is_fresh(TICKER)
        market.reset_subscription.assert_called_once_with("btcusdt@ticker")

        # Window restarts: no second reset before another full timeout
        clock.now += 5
        await market.check_watch(watch)
        assert market.reset_subscription.call_count == 1

    @pytest.mark.asyncio
    async def test_async_reset_callback_awaited(self, registry, clock):
        reset = AsyncMock()
        market = MarketSession("test", "BTC_USDT", registry, channels={DEPTH: "d"},
                               reset_subscription=reset, clock=clock)
        clock.now += 60
        await market.check_watch(market._watches[DEPTH])
        reset.assert_awaited_once_with("d")

    @pytest.mark.asyncio
    async def test_reset_failure_is_logged_not_raised(self, registry, clock):
        market = MarketSession("test", "BTC_USDT", registry, channels={TICKER: "t"},
                               reset_subscription=Mock(side_effect=RuntimeError("gone")), clock=clock)
        clock.now += 60
        await market.check_watch(market._watches[TICKER])
        assert not market.is_fresh(TICKER)

    @pytest.mark.asyncio
    async def test_invalid_depth_resubscribed_once_per_interval(self, market, clock):
        watch = market._watches[DEPTH]
        _feed(market, bid="101", ask="100")
        await market.check_watch(watch)          # invalid since now
        clock.now += 5
        _feed(market, bid="101", ask="100")
        await market.check_watch(watch)
        assert market.reset_subscription.call_count == 0

        clock.now += 26
        _feed(market, bid="101", ask="100")
        await market.check_watch(watch)
        market.reset_subscription.assert_called_once_with("btcusdt@depth")

        clock.now += 5
        _feed(market, bid="101", ask="100")
        await market.check_watch(watch)
        assert market.reset_subscription.call_count == 1


@pytest.fixture
def hub(registry):
    hub = Mock()
    hub.name = "test"
    hub.registry = registry
    hub.is_ready.return_value = True
    return hub


@pytest.fixture
def trader(hub, market):
    _feed(market)
    contract = ContractConfig(symbol="BTCUSDT", max_price_dist_rel=0.01)
    return TraderSession(hub, market, "BTC_USDT", order_factory=IdleOrder, contract=contract)


class TestTraderSession:

    @pytest.mark.asyncio
    async def test_make_order_aligns_and_tracks(self, trader, hub):
        order = trader.make_order(D("100.019"), D("0.123456"), Side.BUY, purpose="entry")
        assert order is not None
        assert order.state.price == D("100.01")
        assert order.state.size == D("0.12345")
        assert order.purpose == "entry"
        hub.track_order.assert_called_once_with(order)
        assert trader.live_orders() == [order]
        await trader.stop()

    @pytest.mark.asyncio
    async def test_post_only_buy_pulled_below_ask(self, trader):
        order = trader.make_order(D("100.5"), D("1"), Side.BUY, post_only=True)
        assert order.state.price == D("100.09")
        await trader.stop()

    def test_refused_when_hub_not_ready(self, trader, hub):
        hub.is_ready.return_value = False
        assert trader.unready_reason() == "venue not ready"
        assert trader.make_order(D("100"), D("1"), Side.BUY) is None

    def test_refused_outside_price_guard(self, trader):
        assert "below guard" in trader.check_price_guard(D("98.9"), Side.BUY)
        assert trader.check_price_guard(D("99.5"), Side.BUY) is None
        assert "above guard" in trader.check_price_guard(D("101.2"), Side.SELL)
        assert trader.make_order(D("98"), D("1"), Side.BUY) is None

    def test_refused_below_minimum_size(self, trader):
        # 5 USDT notional floor at ~100 needs 0.05
        assert trader.make_order(D("100"), D("0.01"), Side.BUY) is None

    @pytest.mark.asyncio
    async def test_cancel_all_then_sweep(self, trader, hub):
        trader.make_order(D("100"), D("1"), Side.BUY)
        trader.make_order(D("100.2"), D("1"), Side.SELL)
        await trader.cancel_all_orders()
        assert trader.live_orders() == []

        removed = await trader.sweep()
        assert removed == 2
        assert trader.orders() == []
        assert hub.untrack_order.call_count == 2
