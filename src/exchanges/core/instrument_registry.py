"""
Instrument catalog with tick/lot alignment.

The registry is the single source of instrument rules for a venue. A
refresh replaces the whole catalog at once and bumps `version`, which
downstream components (market sessions caching parsed trading hours)
compare against to invalidate derived data.
"""

import threading
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Dict, Iterable, Optional

from exchanges.structs import Instrument, InstrumentId, Side
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger


def _floor_to(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).to_integral_value(rounding=ROUND_FLOOR) * step


def _ceil_to(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).to_integral_value(rounding=ROUND_CEILING) * step


class InstrumentRegistry:
    """Thread-safe catalog; readers get copies, writers swap the whole map."""

    def __init__(self, venue: str, logger: Optional[HFTLoggerInterface] = None):
        self.venue = venue
        self.logger = logger or get_exchange_logger(venue, 'instruments')
        self._lock = threading.Lock()
        self._instruments: Dict[InstrumentId, Instrument] = {}
        self._by_symbol: Dict[str, InstrumentId] = {}
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def refresh(self, instruments: Iterable[Instrument]) -> int:
        """Atomically replace the catalog. Returns the new version."""
        catalog = {inst.id: inst for inst in instruments}
        by_symbol = {inst.symbol: inst.id for inst in catalog.values() if inst.symbol}
        with self._lock:
            self._instruments = catalog
            self._by_symbol = by_symbol
            self._version += 1
            version = self._version

        self.logger.info("Instrument catalog refreshed", venue=self.venue,
                         instruments=len(catalog), version=version)
        return version

    def get(self, instrument_id: str) -> Optional[Instrument]:
        with self._lock:
            return self._instruments.get(InstrumentId(instrument_id))

    def get_all(self) -> Dict[InstrumentId, Instrument]:
        with self._lock:
            return dict(self._instruments)

    def resolve(self, name: str) -> Optional[Instrument]:
        """Look up by canonical id or by venue symbol."""
        with self._lock:
            inst = self._instruments.get(InstrumentId(name))
            if inst is None and name in self._by_symbol:
                inst = self._instruments.get(self._by_symbol[name])
            return inst

    def require(self, instrument_id: str) -> Instrument:
        inst = self.get(instrument_id)
        if inst is None:
            raise KeyError(f"{self.venue}: unknown instrument {instrument_id}")
        return inst

    def align_price(self, instrument_id: str, price: Decimal, side: Side, post_only: bool = False,
                    best_bid: Optional[Decimal] = None, best_ask: Optional[Decimal] = None) -> Decimal:
        """
        Round toward the passive side (buy floors, sell ceils to tick).

        With post_only, a price that would cross the known opposite best is
        pulled back to the nearest tick that rests.
        """
        if price == 0:
            return price

        tick = self.require(instrument_id).tick_size
        if side == Side.BUY:
            aligned = _floor_to(price, tick)
            if post_only and best_ask is not None and aligned >= best_ask:
                aligned = _ceil_to(best_ask, tick) - tick
        else:
            aligned = _ceil_to(price, tick)
            if post_only and best_bid is not None and aligned <= best_bid:
                aligned = _floor_to(best_bid, tick) + tick
        return aligned

    def align_size(self, instrument_id: str, size: Decimal) -> Decimal:
        """Floor to lot, then clamp to the declared minimum."""
        inst = self.require(instrument_id)
        return max(_floor_to(size, inst.lot_size), inst.min_size)

    def min_size(self, instrument_id: str, ref_price: Optional[Decimal] = None) -> Decimal:
        inst = self.require(instrument_id)
        if inst.min_notional > 0 and ref_price is not None and ref_price > 0:
            notional_size = _ceil_to(inst.min_notional / ref_price, inst.lot_size)
            return max(inst.min_size, notional_size)
        return inst.min_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._instruments)

    def __contains__(self, instrument_id: str) -> bool:
        return self.get(instrument_id) is not None


__all__ = ['InstrumentRegistry']
