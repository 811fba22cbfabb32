from .common import (
    Instrument, Balance, OrderSnapshot, OrderState, Deal, Kline, FundingRate,
    make_instrument_id, ZERO
)
from .enums import ContractKind, Side, OrderSide, OrderStatus, OrderPhase, SnapshotSource, RespCode, TimeInForce
from .types import VenueName, AssetName, InstrumentId, OrderId

__all__ = [
    "Instrument",
    "Balance",
    "OrderSnapshot",
    "OrderState",
    "Deal",
    "Kline",
    "FundingRate",
    "make_instrument_id",
    "ZERO",
    "ContractKind",
    "Side",
    "OrderSide",
    "OrderStatus",
    "OrderPhase",
    "SnapshotSource",
    "RespCode",
    "TimeInForce",
    "VenueName",
    "AssetName",
    "InstrumentId",
    "OrderId",
]
