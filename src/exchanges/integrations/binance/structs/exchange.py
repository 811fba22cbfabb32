"""Binance REST and WebSocket payload shapes."""

from typing import List, Optional

import msgspec


class BinanceErrorResponse(msgspec.Struct):
    """Binance error envelope."""
    code: int
    msg: str = ""


class BinanceServerTimeResponse(msgspec.Struct):
    serverTime: int


class BinanceSymbolResponse(msgspec.Struct, kw_only=True):
    """Exchange info symbol entry; filters are kept raw and read by type."""
    symbol: str
    status: str
    baseAsset: str
    quoteAsset: str
    filters: List[dict] = []

    def find_filter(self, filter_type: str) -> Optional[dict]:
        for f in self.filters:
            if f.get('filterType') == filter_type:
                return f
        return None


class BinanceExchangeInfoResponse(msgspec.Struct, kw_only=True):
    serverTime: int = 0
    symbols: List[BinanceSymbolResponse] = []


class BinanceBalanceResponse(msgspec.Struct):
    asset: str
    free: str
    locked: str


class BinanceAccountResponse(msgspec.Struct, kw_only=True):
    updateTime: int = 0
    canTrade: bool = True
    balances: List[BinanceBalanceResponse] = []


class BinanceOrderResponse(msgspec.Struct, kw_only=True):
    """Order query / open orders / full place-order reply."""
    symbol: str
    orderId: int
    clientOrderId: str = ""
    price: str = "0"
    origQty: str = "0"
    executedQty: str = "0"
    cummulativeQuoteQty: str = "0"
    status: str = "NEW"
    timeInForce: str = "GTC"
    type: str = "LIMIT"
    side: str = "BUY"
    time: int = 0
    updateTime: int = 0
    transactTime: int = 0


class BinanceCancelResponse(msgspec.Struct, kw_only=True):
    symbol: str
    orderId: int = 0
    origClientOrderId: str = ""
    clientOrderId: str = ""
    price: str = "0"
    origQty: str = "0"
    executedQty: str = "0"
    cummulativeQuoteQty: str = "0"
    status: str = "CANCELED"
    transactTime: int = 0


class BinanceListenKeyResponse(msgspec.Struct):
    listenKey: str


class BinanceFundingRateResponse(msgspec.Struct, kw_only=True):
    symbol: str
    fundingTime: int
    fundingRate: str
    markPrice: str = ""


# WebSocket payloads

class BinanceTickerPayload(msgspec.Struct, kw_only=True):
    """<symbol>@ticker"""
    s: str
    c: str                  # last price
    b: str = "0"            # best bid
    B: str = "0"
    a: str = "0"            # best ask
    A: str = "0"
    E: int = 0


class BinanceDepthPayload(msgspec.Struct, kw_only=True):
    """<symbol>@depth10@100ms partial book"""
    lastUpdateId: int = 0
    bids: List[List[str]] = []
    asks: List[List[str]] = []


class BinanceEventHeader(msgspec.Struct, kw_only=True):
    e: str
    E: int = 0


class BinanceAccountPositionBalance(msgspec.Struct):
    a: str      # asset
    f: str      # free
    l: str      # locked


class BinanceAccountPositionEvent(msgspec.Struct, kw_only=True):
    """outboundAccountPosition"""
    e: str
    E: int
    u: int = 0  # last account update time
    B: List[BinanceAccountPositionBalance] = []


class BinanceExecutionReport(msgspec.Struct, kw_only=True):
    """executionReport"""
    e: str
    E: int
    s: str                  # symbol
    c: str                  # client order id (new id for cancel events)
    C: str = ""             # original client order id
    S: str                  # side
    X: str                  # order status
    i: int                  # order id
    p: str                  # price
    q: str                  # quantity
    z: str                  # cumulative filled
    Z: str = "0"            # cumulative quote
    l: str = "0"            # last filled quantity
    L: str = "0"            # last filled price
    T: int = 0              # transaction time
