"""
Binance direct utility functions: symbol, status and payload conversions.
"""

from decimal import Decimal
from typing import List, Optional, Tuple

from exchanges.integrations.binance.structs.exchange import (
    BinanceCancelResponse, BinanceExecutionReport, BinanceOrderResponse, BinanceSymbolResponse
)
from exchanges.structs import (
    AssetName, ContractKind, Instrument, OrderSnapshot, OrderStatus, Side, SnapshotSource, ZERO
)

_BINANCE_ORDER_STATUS_MAP = {
    'NEW': OrderStatus.NEW,
    'PARTIALLY_FILLED': OrderStatus.PARTIALLY_FILLED,
    'FILLED': OrderStatus.FILLED,
    'CANCELED': OrderStatus.CANCELED,
    'PENDING_CANCEL': OrderStatus.NEW,
    'REJECTED': OrderStatus.REJECTED,
    'EXPIRED': OrderStatus.CANCELED,
    'EXPIRED_IN_MATCH': OrderStatus.CANCELED,
}

_BINANCE_SIDE_MAP = {
    'BUY': Side.BUY,
    'SELL': Side.SELL,
}


def to_order_status(status: str) -> OrderStatus:
    """Unknown statuses are treated as terminal cancellations."""
    return _BINANCE_ORDER_STATUS_MAP.get(status.upper(), OrderStatus.CANCELED)


def to_side(side: str) -> Side:
    return _BINANCE_SIDE_MAP[side.upper()]


def from_side(side: Side) -> str:
    return 'BUY' if side == Side.BUY else 'SELL'


def format_decimal(value: Decimal) -> str:
    """Plain notation without exponent or trailing zeros."""
    text = format(value.normalize(), 'f')
    return text if text != '-0' else '0'


def to_symbol(base: str, quote: str) -> str:
    return f"{base.upper()}{quote.upper()}"


def _dec(value: Optional[str]) -> Decimal:
    return Decimal(value) if value else ZERO


def _avg(filled: Decimal, quote: Decimal) -> Optional[Decimal]:
    return quote / filled if filled > 0 and quote > 0 else None


def rest_to_instrument(symbol: BinanceSymbolResponse) -> Optional[Instrument]:
    """PRICE_FILTER tick, LOT_SIZE step/min, NOTIONAL or MIN_NOTIONAL floor."""
    price_filter = symbol.find_filter('PRICE_FILTER') or {}
    lot_filter = symbol.find_filter('LOT_SIZE') or {}
    notional_filter = symbol.find_filter('NOTIONAL') or symbol.find_filter('MIN_NOTIONAL') or {}

    tick = _dec(price_filter.get('tickSize'))
    lot = _dec(lot_filter.get('stepSize'))
    min_size = _dec(lot_filter.get('minQty'))
    if tick <= 0 or lot <= 0:
        return None
    if min_size <= 0:
        min_size = lot

    return Instrument(
        base=AssetName(symbol.baseAsset.upper()),
        quote=AssetName(symbol.quoteAsset.upper()),
        tick_size=tick.normalize(),
        lot_size=lot.normalize(),
        min_size=min_size.normalize(),
        min_notional=_dec(notional_filter.get('minNotional')),
        kind=ContractKind.SPOT,
        symbol=symbol.symbol,
    )


def rest_to_snapshot(order: BinanceOrderResponse) -> OrderSnapshot:
    filled = _dec(order.executedQty)
    return OrderSnapshot(
        update_time=order.updateTime or order.transactTime or order.time,
        filled=filled,
        status=to_order_status(order.status),
        price=_dec(order.price),
        size=_dec(order.origQty),
        avg_price=_avg(filled, _dec(order.cummulativeQuoteQty)),
        venue_id=str(order.orderId) if order.orderId else None,
        client_id=order.clientOrderId or None,
        source=SnapshotSource.POLL,
    )


def cancel_to_snapshot(reply: BinanceCancelResponse) -> OrderSnapshot:
    filled = _dec(reply.executedQty)
    return OrderSnapshot(
        update_time=reply.transactTime,
        filled=filled,
        status=to_order_status(reply.status),
        price=_dec(reply.price),
        size=_dec(reply.origQty),
        avg_price=_avg(filled, _dec(reply.cummulativeQuoteQty)),
        venue_id=str(reply.orderId) if reply.orderId else None,
        client_id=reply.origClientOrderId or None,
        source=SnapshotSource.POLL,
    )


def ws_to_snapshot(report: BinanceExecutionReport) -> OrderSnapshot:
    """
    Cancel events carry a fresh id in `c` and the order's own id in `C`;
    the snapshot always uses the order's own id.
    """
    filled = _dec(report.z)
    return OrderSnapshot(
        update_time=report.T or report.E,
        filled=filled,
        status=to_order_status(report.X),
        price=_dec(report.p),
        size=_dec(report.q),
        avg_price=_avg(filled, _dec(report.Z)),
        last_fill_price=_dec(report.L),
        last_fill_size=_dec(report.l),
        venue_id=str(report.i),
        client_id=report.C or report.c,
        source=SnapshotSource.PUSH,
    )


def ws_depth_levels(levels: List[List[str]]) -> List[Tuple[Decimal, Decimal]]:
    return [(Decimal(price), Decimal(size)) for price, size, *_ in levels]
