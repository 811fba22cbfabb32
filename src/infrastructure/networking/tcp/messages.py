"""
Typed broker gateway messages and their table-driven decoders.

Outbound structs (Contract, GatewayOrder) know how to lay themselves out as
wire fields; inbound structs are produced by the functions in DECODERS,
keyed by IncomingMessage id. Only the messages the venue integration
consumes are decoded; everything else is dispatched undecoded.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from msgspec import Struct, field

from .framing import FieldReader
from .message_ids import IncomingMessage


# Outbound structures

class Contract(Struct):
    symbol: str = ""
    sec_type: str = "STK"
    exchange: str = "SMART"
    currency: str = "USD"
    con_id: int = 0
    last_trade_date: str = ""
    strike: float = 0.0
    right: str = ""
    multiplier: str = ""
    primary_exchange: str = ""
    local_symbol: str = ""
    trading_class: str = ""
    include_expired: bool = False
    sec_id_type: str = ""
    sec_id: str = ""
    issuer_id: str = ""

    def to_fields(self) -> list:
        return [
            self.con_id,
            self.symbol,
            self.sec_type,
            self.last_trade_date,
            self.strike,
            self.right,
            self.multiplier,
            self.exchange,
            self.primary_exchange,
            self.currency,
            self.local_symbol,
            self.trading_class,
        ]


class GatewayOrder(Struct):
    """Limit order as placed through the gateway; unset numerics stay None."""
    order_id: int
    action: str
    total_quantity: Decimal
    lmt_price: Optional[Decimal] = None
    order_type: str = "LMT"
    tif: str = "GTC"
    account: str = ""
    order_ref: str = ""
    transmit: bool = True
    outside_rth: bool = False

    def to_fields(self) -> list:
        # Field order of the gateway's place-order message; every optional
        # feature not used here is sent as its documented "unset" value.
        return [
            self.action, self.total_quantity, self.order_type,
            self.lmt_price, None,                   # limit, aux
            self.tif, "", self.account, "", 0, self.order_ref, self.transmit,
            0, False, False, 0, 0,                  # parent, block, sweep, display size, trigger
            self.outside_rth, False,                # outside rth, hidden
            "",                                     # shares allocation
            0.0, "", "",                            # discretionary amt, good after, good till
            "", "", "", "", "",                     # fa group, method, percentage, profile, model code
            0, "", -1, 0, "", "",                   # short sale slot, designated loc, exempt, oca type, rule80A, settling firm
            False, None, None,                      # all or none, min qty, percent offset
            False, False, None,                     # etrade only, firm quote only, nbbo price cap
            0, None, None, None, None, None,        # auction strategy, starting/ref price, delta, range lower/upper
            False, None, None,                      # override constraints, volatility, volatility type
            "", None,                               # delta neutral order type, aux price
            0, None, None, None,                    # continuous update, ref price type, trail stop, trailing pct
            None, None, None,                       # scale init size, subs size, price increment
            "", "", "",                             # scale table, active start, active stop
            "",                                     # hedge type
            False, "", "", False,                   # opt out smart, clearing account, intent, not held
            False,                                  # delta neutral contract
            "", "",                                 # algo strategy, algo id
            False, "", False,                       # what if, misc options, solicited
            False, False,                           # randomize size, price
            0,                                      # conditions
            "", None, None, None, None, None, 0,    # adjusted order fields
            "", "", "",                             # ext operator, soft dollar tier
            None,                                   # cash qty
            "", "", "", "",                         # mifid2 fields
            False, False, False,                    # dont use auto price, oms container, discretionary up to limit
            0, None, None,                          # use price mgmt algo, duration, post to ats
            False, "", "",                          # auto cancel parent, error override, manual order time
        ]


# Inbound structures

class PriceIncrement(Struct, frozen=True):
    low_edge: Decimal
    increment: Decimal


class ContractDetails(Struct):
    contract: Contract
    market_name: str = ""
    min_tick: Optional[Decimal] = None
    order_types: str = ""
    valid_exchanges: str = ""
    long_name: str = ""
    time_zone_id: str = ""
    trading_hours: str = ""
    liquid_hours: str = ""
    market_rule_ids: str = ""
    stock_type: str = ""
    min_size: Optional[Decimal] = None
    size_increment: Optional[Decimal] = None
    suggested_size_increment: Optional[Decimal] = None

    def rule_for_exchange(self, exchange: str) -> Optional[int]:
        """Market rule id paired with exchange in valid_exchanges/market_rule_ids."""
        exchanges = self.valid_exchanges.split(",")
        rules = self.market_rule_ids.split(",")
        if exchange not in exchanges:
            return None
        index = exchanges.index(exchange)
        if index >= len(rules) or not rules[index].strip().isdigit():
            return None
        return int(rules[index])


class ErrorMessage(Struct, frozen=True):
    request_id: int
    code: int
    message: str
    advanced_reject: str = ""


class ManagedAccountsMessage(Struct, frozen=True):
    accounts: List[str]


class NextValidIdMessage(Struct, frozen=True):
    order_id: int


class AccountValueMessage(Struct, frozen=True):
    key: str
    value: str
    currency: str
    account: str


class AccountDownloadEndMessage(Struct, frozen=True):
    account: str


class AccountUpdateTimeMessage(Struct, frozen=True):
    timestamp: str


class PortfolioValueMessage(Struct, frozen=True):
    contract: Contract
    position: Decimal
    market_price: float
    market_value: float
    avg_cost: float
    unrealized_pnl: float
    realized_pnl: float
    account: str


class ContractDetailsMessage(Struct, frozen=True):
    request_id: int
    details: ContractDetails


class ContractDataEndMessage(Struct, frozen=True):
    request_id: int


class TickPriceMessage(Struct, frozen=True):
    request_id: int
    tick_type: int
    price: Optional[Decimal]
    size: Optional[Decimal]
    attr_mask: int = 0


class TickSizeMessage(Struct, frozen=True):
    request_id: int
    tick_type: int
    size: Optional[Decimal]


class MarketDataTypeMessage(Struct, frozen=True):
    request_id: int
    market_data_type: int


class TickReqParamsMessage(Struct, frozen=True):
    request_id: int
    min_tick: Optional[Decimal]
    bbo_exchange: str
    snapshot_permissions: int


class MarketRuleMessage(Struct, frozen=True):
    rule_id: int
    increments: List[PriceIncrement] = field(default_factory=list)


class HistoricalBar(Struct, frozen=True):
    time: str
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    wap: Decimal
    bar_count: int


class HistoricalDataMessage(Struct, frozen=True):
    request_id: int
    start: str
    end: str
    bars: List[HistoricalBar] = field(default_factory=list)


class OrderStatusMessage(Struct, frozen=True):
    order_id: int
    status: str
    filled: Decimal
    remaining: Decimal
    avg_fill_price: Decimal
    perm_id: int
    parent_id: int
    last_fill_price: Decimal
    client_id: int
    why_held: str = ""
    mkt_cap_price: Optional[Decimal] = None


class OpenOrderMessage(Struct, frozen=True):
    order_id: int
    contract: Contract
    action: str
    total_quantity: Decimal
    order_type: str
    lmt_price: Optional[Decimal]
    tif: str
    account: str
    client_id: int
    perm_id: int


class OpenOrderEndMessage(Struct, frozen=True):
    pass


# Tick types consumed by market sessions
TICK_BID_SIZE = 0
TICK_BID = 1
TICK_ASK = 2
TICK_ASK_SIZE = 3
TICK_LAST = 4
TICK_LAST_SIZE = 5
TICK_DELAYED_BID = 66
TICK_DELAYED_ASK = 67
TICK_DELAYED_LAST = 68

# Order status strings
STATUS_PENDING_SUBMIT = "PendingSubmit"
STATUS_PENDING_CANCEL = "PendingCancel"
STATUS_PRE_SUBMITTED = "PreSubmitted"
STATUS_SUBMITTED = "Submitted"
STATUS_API_CANCELLED = "ApiCancelled"
STATUS_CANCELLED = "Cancelled"
STATUS_FILLED = "Filled"
STATUS_INACTIVE = "Inactive"


# Decoders

def _decode_error(r: FieldReader) -> ErrorMessage:
    version = r.read_int(0)
    if version < 2:
        return ErrorMessage(request_id=-1, code=0, message=r.read_str())
    return ErrorMessage(
        request_id=r.read_int(-1),
        code=r.read_int(0),
        message=r.read_str(),
        advanced_reject=r.read_str(),
    )


def _decode_managed_accounts(r: FieldReader) -> ManagedAccountsMessage:
    r.skip()  # version
    accounts = [a for a in r.read_str().split(",") if a]
    return ManagedAccountsMessage(accounts=accounts)


def _decode_next_valid_id(r: FieldReader) -> NextValidIdMessage:
    r.skip()
    return NextValidIdMessage(order_id=r.read_int(0))


def _decode_account_value(r: FieldReader) -> AccountValueMessage:
    r.skip()
    return AccountValueMessage(key=r.read_str(), value=r.read_str(), currency=r.read_str(), account=r.read_str())


def _decode_account_download_end(r: FieldReader) -> AccountDownloadEndMessage:
    r.skip()
    return AccountDownloadEndMessage(account=r.read_str())


def _decode_account_update_time(r: FieldReader) -> AccountUpdateTimeMessage:
    r.skip()
    return AccountUpdateTimeMessage(timestamp=r.read_str())


def _decode_portfolio_value(r: FieldReader) -> PortfolioValueMessage:
    r.skip()
    contract = Contract(
        con_id=r.read_int(0),
        symbol=r.read_str(),
        sec_type=r.read_str(),
        last_trade_date=r.read_str(),
        strike=r.read_float(0.0),
        right=r.read_str(),
        multiplier=r.read_str(),
        primary_exchange=r.read_str(),
        currency=r.read_str(),
        local_symbol=r.read_str(),
        trading_class=r.read_str(),
        exchange="",
    )
    return PortfolioValueMessage(
        contract=contract,
        position=r.read_decimal(Decimal(0)),
        market_price=r.read_float(0.0),
        market_value=r.read_float(0.0),
        avg_cost=r.read_float(0.0),
        unrealized_pnl=r.read_float(0.0),
        realized_pnl=r.read_float(0.0),
        account=r.read_str(),
    )


def _decode_contract_data(r: FieldReader) -> ContractDetailsMessage:
    request_id = r.read_int(-1)
    contract = Contract(
        symbol=r.read_str(),
        sec_type=r.read_str(),
        last_trade_date=r.read_str(),
        strike=r.read_float(0.0),
        right=r.read_str(),
        exchange=r.read_str(),
        currency=r.read_str(),
        local_symbol=r.read_str(),
    )
    details = ContractDetails(contract=contract, market_name=r.read_str())
    contract.trading_class = r.read_str()
    contract.con_id = r.read_int(0)
    details.min_tick = r.read_decimal()
    contract.multiplier = r.read_str()
    details.order_types = r.read_str()
    details.valid_exchanges = r.read_str()
    r.skip(2)                               # price magnifier, under con id
    details.long_name = r.read_str()
    contract.primary_exchange = r.read_str()
    r.skip(4)                               # contract month, industry, category, subcategory
    details.time_zone_id = r.read_str()
    details.trading_hours = r.read_str()
    details.liquid_hours = r.read_str()
    r.skip(2)                               # ev rule, ev multiplier
    sec_id_count = r.read_int(0)
    r.skip(2 * sec_id_count)
    r.skip(3)                               # agg group, under symbol, under sec type
    details.market_rule_ids = r.read_str()
    r.skip()                                # real expiration date
    details.stock_type = r.read_str()
    details.min_size = r.read_decimal()
    details.size_increment = r.read_decimal()
    details.suggested_size_increment = r.read_decimal()
    return ContractDetailsMessage(request_id=request_id, details=details)


def _decode_contract_data_end(r: FieldReader) -> ContractDataEndMessage:
    r.skip()
    return ContractDataEndMessage(request_id=r.read_int(-1))


def _decode_tick_price(r: FieldReader) -> TickPriceMessage:
    r.skip()
    return TickPriceMessage(
        request_id=r.read_int(-1),
        tick_type=r.read_int(-1),
        price=r.read_decimal(),
        size=r.read_decimal(),
        attr_mask=r.read_int(0),
    )


def _decode_tick_size(r: FieldReader) -> TickSizeMessage:
    r.skip()
    return TickSizeMessage(request_id=r.read_int(-1), tick_type=r.read_int(-1), size=r.read_decimal())


def _decode_market_data_type(r: FieldReader) -> MarketDataTypeMessage:
    r.skip()
    return MarketDataTypeMessage(request_id=r.read_int(-1), market_data_type=r.read_int(0))


def _decode_tick_req_params(r: FieldReader) -> TickReqParamsMessage:
    return TickReqParamsMessage(
        request_id=r.read_int(-1),
        min_tick=r.read_decimal(),
        bbo_exchange=r.read_str(),
        snapshot_permissions=r.read_int(0),
    )


def _decode_market_rule(r: FieldReader) -> MarketRuleMessage:
    rule_id = r.read_int(0)
    count = r.read_int(0)
    increments = [PriceIncrement(low_edge=r.read_decimal(Decimal(0)), increment=r.read_decimal(Decimal(0)))
                  for _ in range(count)]
    return MarketRuleMessage(rule_id=rule_id, increments=increments)


def _decode_historical_data(r: FieldReader) -> HistoricalDataMessage:
    request_id = r.read_int(-1)
    start = r.read_str()
    end = r.read_str()
    count = r.read_int(0)
    bars = []
    for _ in range(count):
        bars.append(HistoricalBar(
            time=r.read_str(),
            open=r.read_decimal(Decimal(0)),
            high=r.read_decimal(Decimal(0)),
            low=r.read_decimal(Decimal(0)),
            close=r.read_decimal(Decimal(0)),
            volume=r.read_decimal(Decimal(0)),
            wap=r.read_decimal(Decimal(0)),
            bar_count=r.read_int(0),
        ))
    return HistoricalDataMessage(request_id=request_id, start=start, end=end, bars=bars)


def _decode_order_status(r: FieldReader) -> OrderStatusMessage:
    return OrderStatusMessage(
        order_id=r.read_int(0),
        status=r.read_str(),
        filled=r.read_decimal(Decimal(0)),
        remaining=r.read_decimal(Decimal(0)),
        avg_fill_price=r.read_decimal(Decimal(0)),
        perm_id=r.read_int(0),
        parent_id=r.read_int(0),
        last_fill_price=r.read_decimal(Decimal(0)),
        client_id=r.read_int(0),
        why_held=r.read_str(),
        mkt_cap_price=r.read_decimal(),
    )


def _decode_open_order(r: FieldReader) -> OpenOrderMessage:
    order_id = r.read_int(0)
    contract = Contract(
        con_id=r.read_int(0),
        symbol=r.read_str(),
        sec_type=r.read_str(),
        last_trade_date=r.read_str(),
        strike=r.read_float(0.0),
        right=r.read_str(),
        multiplier=r.read_str(),
        exchange=r.read_str(),
        currency=r.read_str(),
        local_symbol=r.read_str(),
        trading_class=r.read_str(),
    )
    action = r.read_str()
    total_quantity = r.read_decimal(Decimal(0))
    order_type = r.read_str()
    lmt_price = r.read_decimal()
    r.skip()                                # aux price
    tif = r.read_str()
    r.skip()                                # oca group
    account = r.read_str()
    r.skip(3)                               # open/close, origin, order ref
    client_id = r.read_int(0)
    perm_id = r.read_int(0)
    # The remainder (several hundred optional order attributes) is not consumed
    return OpenOrderMessage(
        order_id=order_id, contract=contract, action=action, total_quantity=total_quantity,
        order_type=order_type, lmt_price=lmt_price, tif=tif, account=account,
        client_id=client_id, perm_id=perm_id,
    )


def _decode_open_order_end(r: FieldReader) -> OpenOrderEndMessage:
    return OpenOrderEndMessage()


DECODERS: Dict[IncomingMessage, Callable[[FieldReader], Any]] = {
    IncomingMessage.ERROR: _decode_error,
    IncomingMessage.MANAGED_ACCOUNTS: _decode_managed_accounts,
    IncomingMessage.NEXT_VALID_ID: _decode_next_valid_id,
    IncomingMessage.ACCOUNT_VALUE: _decode_account_value,
    IncomingMessage.ACCOUNT_DOWNLOAD_END: _decode_account_download_end,
    IncomingMessage.ACCOUNT_UPDATE_TIME: _decode_account_update_time,
    IncomingMessage.PORTFOLIO_VALUE: _decode_portfolio_value,
    IncomingMessage.CONTRACT_DATA: _decode_contract_data,
    IncomingMessage.CONTRACT_DATA_END: _decode_contract_data_end,
    IncomingMessage.TICK_PRICE: _decode_tick_price,
    IncomingMessage.TICK_SIZE: _decode_tick_size,
    IncomingMessage.MARKET_DATA: _decode_market_data_type,
    IncomingMessage.TICK_REQ_PARAMS: _decode_tick_req_params,
    IncomingMessage.MARKET_RULE: _decode_market_rule,
    IncomingMessage.HISTORICAL_DATA: _decode_historical_data,
    IncomingMessage.ORDER_STATUS: _decode_order_status,
    IncomingMessage.OPEN_ORDER: _decode_open_order,
    IncomingMessage.OPEN_ORDER_END: _decode_open_order_end,
}
