"""
Order book mirror.

SortedDict-backed price levels: bids keyed descending, asks ascending, so
the best level of either side is peekitem(0). Full rebuilds build new
dicts and swap them in under the lock; readers copy under the same lock.
"""

import threading
import time
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sortedcontainers import SortedDict

from exchanges.structs import Side

Level = Tuple[Decimal, Decimal]


def _bid_key(price: Decimal) -> Decimal:
    return -price


class OrderBookMirror:
    """Top-of-book and N-level depth for one instrument."""

    __slots__ = ('instrument_id', '_lock', '_bids', '_asks', '_update_time')

    def __init__(self, instrument_id: str = ""):
        self.instrument_id = instrument_id
        self._lock = threading.Lock()
        self._bids: SortedDict = SortedDict(_bid_key)
        self._asks: SortedDict = SortedDict()
        self._update_time = 0.0

    @property
    def update_time(self) -> float:
        """Local wall time (seconds) of the last mutation; 0 if never updated."""
        return self._update_time

    def rebuild(self, asks: Iterable[Level], bids: Iterable[Level], timestamp: Optional[float] = None) -> None:
        """Replace both sides with a full snapshot. Zero-size levels are skipped."""
        new_asks = SortedDict({price: size for price, size in asks if size > 0})
        new_bids = SortedDict(_bid_key, {price: size for price, size in bids if size > 0})
        with self._lock:
            self._asks = new_asks
            self._bids = new_bids
            self._update_time = timestamp or time.time()

    def update_level(self, side: Side, price: Decimal, size: Decimal, timestamp: Optional[float] = None) -> None:
        """Set one level; size 0 removes it."""
        with self._lock:
            levels = self._bids if side == Side.BUY else self._asks
            if size <= 0:
                levels.pop(price, None)
            else:
                levels[price] = size
            self._update_time = timestamp or time.time()

    def clear(self) -> None:
        with self._lock:
            self._bids = SortedDict(_bid_key)
            self._asks = SortedDict()
            self._update_time = 0.0

    def best(self, side: Side) -> Optional[Level]:
        """Best bid for BUY, best ask for SELL. O(1)."""
        with self._lock:
            levels = self._bids if side == Side.BUY else self._asks
            if not levels:
                return None
            return levels.peekitem(0)

    @property
    def best_bid(self) -> Optional[Decimal]:
        level = self.best(Side.BUY)
        return level[0] if level else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        level = self.best(Side.SELL)
        return level[0] if level else None

    def depth(self, levels: int = 10) -> Tuple[List[Level], List[Level]]:
        """Copy of the top levels as (asks, bids)."""
        with self._lock:
            asks = list(self._asks.items()[:levels])
            bids = list(self._bids.items()[:levels])
        return asks, bids

    def is_valid(self) -> bool:
        """Both sides present and not crossed."""
        with self._lock:
            if not self._bids or not self._asks:
                return False
            return self._bids.peekitem(0)[0] < self._asks.peekitem(0)[0]

    def render_string(self, top_n: int = 5) -> str:
        asks, bids = self.depth(top_n)
        lines = [f"{price}\t{size}" for price, size in reversed(asks)]
        lines.append("-" * 16)
        lines.extend(f"{price}\t{size}" for price, size in bids)
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (f"OrderBookMirror(instrument={self.instrument_id}, "
                f"bid={self.best_bid}, ask={self.best_ask})")
