"""
Live view of one instrument: last price, depth, trading hours, readiness.

Each subscribed channel has an inactivity watchdog. When a channel goes
quiet the session flips its freshness flag off and asks the venue to reset
the subscription (the websocket layer then resubscribes it). Depth that
stays invalid while the market is open is resubscribed as well, at most
once per minute.
"""

import asyncio
import time
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from exchanges.core.instrument_registry import InstrumentRegistry
from exchanges.core.orderbook import Level, OrderBookMirror
from exchanges.core.trading_hours import TradingHours
from exchanges.structs import InstrumentId, Side
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger

TICKER = "ticker"
DEPTH = "depth"

ResetCallback = Callable[[str], Union[None, Awaitable[None]]]

DEFAULT_WATCHDOG_TIMEOUTS = {TICKER: 30.0, DEPTH: 10.0}


class _ChannelWatch:
    __slots__ = ('kind', 'channel_key', 'timeout', 'last_update', 'fresh', 'task')

    def __init__(self, kind: str, channel_key: str, timeout: float):
        self.kind = kind
        self.channel_key = channel_key
        self.timeout = timeout
        self.last_update = 0.0
        self.fresh = False
        self.task: Optional[asyncio.Task] = None


class MarketSession:

    def __init__(self, venue: str, instrument_id: InstrumentId, registry: InstrumentRegistry,
                 channels: Dict[str, str],
                 reset_subscription: Optional[ResetCallback] = None,
                 connection_ok: Optional[Callable[[], bool]] = None,
                 watchdog_timeouts: Optional[Dict[str, float]] = None,
                 depth_invalid_after: float = 30.0,
                 depth_resubscribe_interval: float = 60.0,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[HFTLoggerInterface] = None):
        self.venue = venue
        self.instrument_id = instrument_id
        self.registry = registry
        self.reset_subscription = reset_subscription
        self.connection_ok = connection_ok or (lambda: True)
        self.depth_invalid_after = depth_invalid_after
        self.depth_resubscribe_interval = depth_resubscribe_interval
        self._clock = clock
        self.logger = logger or get_exchange_logger(venue, f'market.{instrument_id}')

        self.last_price: Optional[Decimal] = None
        self.orderbook = OrderBookMirror(instrument_id)

        timeouts = dict(DEFAULT_WATCHDOG_TIMEOUTS)
        timeouts.update(watchdog_timeouts or {})
        self._watches: Dict[str, _ChannelWatch] = {
            kind: _ChannelWatch(kind, key, timeouts.get(kind, 30.0)) for kind, key in channels.items()
        }

        self._hours: Optional[TradingHours] = None
        self._hours_version = -1
        self._depth_invalid_since: Optional[float] = None
        self._last_depth_resubscribe = 0.0
        self._running = False

    # -- feeds --

    def _touch(self, kind: str) -> None:
        watch = self._watches.get(kind)
        if watch is not None:
            watch.last_update = self._clock()
            watch.fresh = True

    def on_ticker(self, price: Decimal) -> None:
        if price > 0:
            self.last_price = price
        self._touch(TICKER)

    def on_depth(self, asks: Iterable[Level], bids: Iterable[Level]) -> None:
        """Full depth snapshot."""
        self.orderbook.rebuild(asks, bids, timestamp=self._clock())
        self._touch(DEPTH)

    def on_depth_level(self, side: Side, price: Decimal, size: Decimal) -> None:
        """Single level update (venues streaming top-of-book ticks)."""
        self.orderbook.update_level(side, price, size, timestamp=self._clock())
        self._touch(DEPTH)

    def on_quote(self, bid: Optional[Level], ask: Optional[Level]) -> None:
        """Top-of-book replacement from a best bid/ask feed."""
        self.orderbook.rebuild([ask] if ask else [], [bid] if bid else [], timestamp=self._clock())
        self._touch(DEPTH)

    # -- readiness --

    @property
    def trading_hours(self) -> TradingHours:
        """Parsed lazily; re-parsed whenever the catalog version changes."""
        version = self.registry.version
        if self._hours is None or version != self._hours_version:
            inst = self.registry.get(self.instrument_id)
            raw = inst.trading_hours if inst else None
            try:
                self._hours = TradingHours.parse(raw, inst.time_zone if inst else None)
            except ValueError as e:
                self.logger.error(f"Unparseable trading hours {raw!r}: {e}")
                self._hours = TradingHours([])
            self._hours_version = version
        return self._hours

    def is_market_open(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return self.trading_hours.is_open(int(now * 1000))

    def is_fresh(self, kind: str) -> bool:
        watch = self._watches.get(kind)
        return watch is None or watch.fresh

    def unready_reason(self) -> Optional[str]:
        if not self.connection_ok():
            return "connection down"
        if not self.is_market_open():
            return "market closed"
        if self.last_price is None or not self.is_fresh(TICKER):
            return "price stale"
        if not self.is_fresh(DEPTH) or not self.orderbook.is_valid():
            return "depth stale"
        return None

    def is_ready(self) -> bool:
        return self.unready_reason() is None

    # -- watchdogs --

    async def _reset(self, watch: _ChannelWatch, reason: str) -> None:
        self.logger.warning(f"Resetting {watch.channel_key}: {reason}", venue=self.venue)
        if self.reset_subscription is None:
            return
        try:
            result = self.reset_subscription(watch.channel_key)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.logger.error(f"Subscription reset failed for {watch.channel_key}: {e}", venue=self.venue)

    async def check_watch(self, watch: _ChannelWatch) -> float:
        """One watchdog pass; returns seconds until the next check."""
        now = self._clock()
        elapsed = now - watch.last_update
        if elapsed >= watch.timeout:
            was_fresh = watch.fresh
            watch.fresh = False
            # Restart the window so a silent channel is reset once per timeout
            watch.last_update = now
            await self._reset(watch, "stale" if was_fresh else "no data")
            return watch.timeout

        if watch.kind == DEPTH:
            await self._check_depth(now)
        return max(watch.timeout - elapsed, 0.1)

    async def _check_depth(self, now: float) -> None:
        if self.orderbook.is_valid() or not self.is_market_open(now):
            self._depth_invalid_since = None
            return
        if self._depth_invalid_since is None:
            self._depth_invalid_since = now
            return
        if now - self._depth_invalid_since >= self.depth_invalid_after \
                and now - self._last_depth_resubscribe >= self.depth_resubscribe_interval:
            self._last_depth_resubscribe = now
            await self._reset(self._watches[DEPTH], "depth invalid")

    async def _watchdog(self, watch: _ChannelWatch) -> None:
        watch.last_update = self._clock()
        while self._running:
            delay = await self.check_watch(watch)
            await asyncio.sleep(min(delay, watch.timeout))

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for watch in self._watches.values():
            watch.task = asyncio.create_task(self._watchdog(watch))

    async def stop(self) -> None:
        self._running = False
        tasks = [w.task for w in self._watches.values() if w.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for watch in self._watches.values():
            watch.task = None

    def channels(self) -> Dict[str, str]:
        return {kind: w.channel_key for kind, w in self._watches.items()}

    def best(self) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        return self.orderbook.best_bid, self.orderbook.best_ask

    def __repr__(self) -> str:
        return f"MarketSession({self.venue}:{self.instrument_id}, last={self.last_price}, ready={self.is_ready()})"


__all__ = ['MarketSession', 'TICKER', 'DEPTH', 'DEFAULT_WATCHDOG_TIMEOUTS']
