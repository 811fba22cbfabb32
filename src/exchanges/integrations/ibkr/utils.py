"""
IBKR conversions between gateway messages and the unified data model.
"""

import time
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config.structs import ContractConfig
from exchanges.structs import (
    AssetName, ContractKind, Instrument, OrderSnapshot, OrderStatus, Side, SnapshotSource, ZERO
)
from infrastructure.networking.tcp.messages import (
    STATUS_API_CANCELLED, STATUS_CANCELLED, STATUS_FILLED, STATUS_INACTIVE,
    Contract, ContractDetails, MarketRuleMessage, OpenOrderMessage, OrderStatusMessage,
)

_TERMINAL_STATUS_MAP = {
    STATUS_FILLED: OrderStatus.FILLED,
    STATUS_CANCELLED: OrderStatus.CANCELED,
    STATUS_API_CANCELLED: OrderStatus.CANCELED,
    STATUS_INACTIVE: OrderStatus.CANCELED,
}

_BAR_SIZES = {
    1: "1 sec",
    5: "5 secs",
    15: "15 secs",
    30: "30 secs",
    60: "1 min",
    120: "2 mins",
    180: "3 mins",
    300: "5 mins",
    900: "15 mins",
    1800: "30 mins",
    3600: "1 hour",
    86400: "1 day",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def from_side(side: Side) -> str:
    return 'BUY' if side == Side.BUY else 'SELL'


def to_order_status(status: str, filled: Decimal) -> OrderStatus:
    """PendingSubmit/PreSubmitted/Submitted/PendingCancel are all still working."""
    terminal = _TERMINAL_STATUS_MAP.get(status)
    if terminal is not None:
        return terminal
    return OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.NEW


def bar_size(interval_sec: int) -> str:
    try:
        return _BAR_SIZES[interval_sec]
    except KeyError:
        raise ValueError(f"Unsupported bar interval: {interval_sec}s") from None


def history_duration(span_sec: int) -> str:
    """Seconds up to one day, whole days beyond."""
    if span_sec <= 86400:
        return f"{max(span_sec, 1)} S"
    return f"{span_sec // 86400} D"


def to_contract(config: ContractConfig) -> Contract:
    return Contract(symbol=config.symbol, sec_type=config.sec_type,
                    exchange=config.exchange, currency=config.currency)


def to_instrument_kind(sec_type: str) -> ContractKind:
    return ContractKind.SPOT if sec_type == 'CRYPTO' else ContractKind.STOCK


def details_to_instrument(details: ContractDetails, rule: Optional[MarketRuleMessage],
                          time_zone: Optional[str] = None) -> Instrument:
    """
    Tick from the exchange's market rule (lowest band) or min tick; lot from
    the size increment; hours from liquid hours.

    Raises:
        ValueError: When neither the rule nor the details carry a tick
    """
    contract = details.contract
    tick = None
    if rule is not None and rule.increments:
        tick = rule.increments[0].increment
    if not tick or tick <= 0:
        tick = details.min_tick
    if not tick or tick <= 0:
        raise ValueError(f"{contract.symbol}: no price increment in contract details")
    lot = details.size_increment if details.size_increment and details.size_increment > 0 else Decimal(1)
    min_size = details.min_size if details.min_size and details.min_size > 0 else lot

    return Instrument(
        base=AssetName(contract.symbol.upper()),
        quote=AssetName(contract.currency.upper()),
        tick_size=tick.normalize(),
        lot_size=lot.normalize(),
        min_size=min_size.normalize(),
        kind=to_instrument_kind(contract.sec_type),
        symbol=contract.symbol,
        trading_hours=details.liquid_hours or None,
        time_zone=details.time_zone_id or time_zone,
        con_id=contract.con_id or None,
    )


def status_to_snapshot(msg: OrderStatusMessage, ts: Optional[int] = None) -> OrderSnapshot:
    """
    The gateway stamps no time on order status; arrival time stands in.
    Deals come from (filled, avg fill price) deltas, so no explicit last
    fill is carried.
    """
    filled = msg.filled if msg.filled > 0 else ZERO
    return OrderSnapshot(
        update_time=now_ms() if ts is None else ts,
        filled=filled,
        status=to_order_status(msg.status, filled),
        avg_price=msg.avg_fill_price if msg.avg_fill_price > 0 else None,
        venue_id=str(msg.perm_id) if msg.perm_id else None,
        client_id=str(msg.order_id),
        source=SnapshotSource.PUSH,
    )


def open_order_terms(msg: OpenOrderMessage):
    """(price, size) an OpenOrder currently rests with."""
    price = msg.lmt_price if msg.lmt_price is not None and msg.lmt_price > 0 else None
    size = msg.total_quantity if msg.total_quantity > 0 else None
    return price, size


def parse_bar_time(text: str, time_zone: Optional[str] = None) -> int:
    """
    Bar time as sent with date format 1: 'yyyymmdd' for daily bars,
    'yyyymmdd hh:mm:ss [zone]' for intraday ones, epoch seconds otherwise.

    Raises:
        ValueError: On an unrecognized time string
    """
    tokens = text.split()
    if not tokens:
        raise ValueError("empty bar time")
    if len(tokens) == 1 and tokens[0].isdigit() and len(tokens[0]) != 8:
        return int(tokens[0]) * 1000

    zone_name = tokens[2] if len(tokens) > 2 else time_zone
    try:
        zone = ZoneInfo(zone_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo(time_zone or "UTC")
    if len(tokens) == 1:
        dt = datetime.strptime(tokens[0], '%Y%m%d')
    else:
        dt = datetime.strptime(f"{tokens[0]} {tokens[1]}", '%Y%m%d %H:%M:%S')
    return int(dt.replace(tzinfo=zone).timestamp() * 1000)
