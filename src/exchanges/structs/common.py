"""
Common data structures shared by the venue integrations and the core
order/market machinery.

Prices and sizes that take part in alignment or fill accounting are
Decimal; historical series (klines, funding) are float because they are
stored and processed in bulk.
"""

from decimal import Decimal
from typing import Optional

from msgspec import Struct

from .enums import ContractKind, OrderStatus, Side, SnapshotSource
from .types import AssetName, InstrumentId, OrderId

ZERO = Decimal(0)


def make_instrument_id(base: str, quote: str, kind: ContractKind = ContractKind.SPOT) -> InstrumentId:
    """Canonical id: BASE_QUOTE for spot, BASE_QUOTE_KIND otherwise."""
    base_quote = f"{base.upper()}_{quote.upper()}"
    if kind is ContractKind.SPOT:
        return InstrumentId(base_quote)
    return InstrumentId(f"{base_quote}_{kind.name}")


class Instrument(Struct, frozen=True):
    """
    Tradable instrument with its alignment rules.

    min_notional may be zero, meaning the venue declares no notional floor.
    trading_hours carries the venue's raw session string when the venue has
    sessions at all (crypto venues leave it None).
    """
    base: AssetName
    quote: AssetName
    tick_size: Decimal
    lot_size: Decimal
    min_size: Decimal
    min_notional: Decimal = ZERO
    kind: ContractKind = ContractKind.SPOT
    symbol: str = ""
    trading_hours: Optional[str] = None
    time_zone: Optional[str] = None
    con_id: Optional[int] = None

    def __post_init__(self):
        for name in ('tick_size', 'lot_size', 'min_size'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{self.base}/{self.quote}: {name} must be positive")
        if self.min_notional < 0:
            raise ValueError(f"{self.base}/{self.quote}: min_notional must not be negative")

    @property
    def id(self) -> InstrumentId:
        return make_instrument_id(self.base, self.quote, self.kind)

    def __str__(self) -> str:
        return self.id


class Balance(Struct, frozen=True):
    """Snapshot of one currency in the ledger."""
    currency: AssetName
    rights: Decimal = ZERO
    frozen: Decimal = ZERO
    last_update: int = 0
    temp_rights_delta: Decimal = ZERO

    @property
    def available(self) -> Decimal:
        return self.rights - self.frozen

    def __str__(self):
        return f"{self.currency}: {self.rights}({self.available}/{self.frozen})"


class OrderSnapshot(Struct, frozen=True):
    """One observation of an order, from the push stream or from a poll."""
    update_time: int
    filled: Decimal
    status: OrderStatus
    price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    avg_price: Optional[Decimal] = None
    last_fill_price: Optional[Decimal] = None
    last_fill_size: Optional[Decimal] = None
    venue_id: Optional[str] = None
    client_id: Optional[str] = None
    source: SnapshotSource = SnapshotSource.POLL


class OrderState(Struct):
    """Mutable state of one order, owned by its OrderEngine."""
    client_id: OrderId
    instrument_id: InstrumentId
    side: Side
    price: Decimal
    size: Decimal
    venue_id: Optional[str] = None
    filled: Decimal = ZERO
    avg_price: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.NEW
    update_time: int = 0
    finished: bool = False
    fatal_error: bool = False
    error_message: str = ""

    def __str__(self):
        return (f"{self.instrument_id} {self.side.name} {self.filled}/{self.size}@{self.price} "
                f"status: {self.status.name} venue_id: {self.venue_id}")


class Deal(Struct, frozen=True):
    """Incremental fill derived from consecutive order observations."""
    order_id: Optional[str]
    client_id: OrderId
    price: Decimal
    amount: Decimal
    venue_time: int
    local_time: int


class Kline(Struct, frozen=True):
    """Kline/candlestick data."""
    open_time: int          # Unix timestamp (milliseconds)
    open: float
    high: float
    low: float
    close: float
    volume: float           # Base asset volume
    quote_volume: float     # Quote asset volume


class FundingRate(Struct, frozen=True):
    """Settled funding rate of a perpetual contract."""
    symbol: str
    funding_time: int       # Unix timestamp (milliseconds)
    funding_rate: float
    mark_price: float = 0.0
