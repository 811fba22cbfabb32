"""
Typed request surface over the gateway session.

Each method lays out one gateway request and, where the gateway answers
with a logical reply, waits for it through FramedTcpClient.request().
Replies come back as (RespCode, value); a gateway ErrorMessage addressed
to the request is returned as the value rather than raised, leaving the
caller to decide whether it is fatal.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple, Union

from exchanges.structs.enums import RespCode
from infrastructure.networking.tcp import FramedTcpClient, IncomingMessage, OutgoingMessage
from infrastructure.networking.tcp.messages import (
    STATUS_CANCELLED, Contract, ContractDataEndMessage, ContractDetails, ContractDetailsMessage,
    ErrorMessage, GatewayOrder, HistoricalDataMessage, MarketDataTypeMessage, MarketRuleMessage,
    OrderStatusMessage,
)

# Order cancelled notice; arrives alongside the Cancelled status
ORDER_CANCELLED_NOTICE = 202

ACCOUNT_DATA_VERSION = 2
CONTRACT_DATA_VERSION = 8
MARKET_DATA_VERSION = 11
CANCEL_MARKET_DATA_VERSION = 2
CANCEL_ORDER_VERSION = 1
GLOBAL_CANCEL_VERSION = 1
OPEN_ORDERS_VERSION = 1

ContractDetailsReply = Tuple[RespCode, Union[List[ContractDetails], ErrorMessage, None]]
OrderReply = Tuple[RespCode, Union[OrderStatusMessage, ErrorMessage, None]]


def _error_for(request_id: int, msg_id: IncomingMessage, message: Any) -> Optional[ErrorMessage]:
    if msg_id == IncomingMessage.ERROR and message.request_id == request_id:
        return message
    return None


def format_end_time(ts: datetime) -> str:
    """Historical-data end time in the gateway's 'yyyymmdd-HH:MM:SS' UTC form."""
    return ts.astimezone(timezone.utc).strftime('%Y%m%d-%H:%M:%S')


class TwsClient(FramedTcpClient):

    # Account

    async def req_account_updates(self, account: str, subscribe: bool = True) -> None:
        """Stream AccountValue/PortfolioValue for account; repeats every few minutes."""
        await self.send(OutgoingMessage.REQUEST_ACCOUNT_DATA, ACCOUNT_DATA_VERSION, subscribe, account)

    # Reference data

    async def req_contract_details(self, contract: Contract) -> ContractDetailsReply:
        """
        All contract details matching contract.

        Returns:
            (OK, [details...]) on ContractDataEnd, (OK, ErrorMessage) when the
            gateway rejects the query, (TIMEOUT, None) otherwise
        """
        req_id = self.next_request_id()
        matched: List[ContractDetails] = []

        def matcher(msg_id: IncomingMessage, message: Any):
            if msg_id == IncomingMessage.CONTRACT_DATA and isinstance(message, ContractDetailsMessage):
                if message.request_id == req_id:
                    matched.append(message.details)
            elif msg_id == IncomingMessage.CONTRACT_DATA_END and isinstance(message, ContractDataEndMessage):
                if message.request_id == req_id:
                    return matched
            else:
                return _error_for(req_id, msg_id, message)
            return None

        fields = [
            OutgoingMessage.REQUEST_CONTRACT_DATA, CONTRACT_DATA_VERSION, req_id,
            contract.to_fields(), contract.include_expired,
            contract.sec_id_type, contract.sec_id, contract.issuer_id,
        ]
        return await self.request(fields, matcher)

    async def req_market_rule(self, rule_id: int) -> Tuple[RespCode, Optional[MarketRuleMessage]]:
        def matcher(msg_id: IncomingMessage, message: Any):
            if msg_id == IncomingMessage.MARKET_RULE and message.rule_id == rule_id:
                return message
            return None

        return await self.request([OutgoingMessage.REQUEST_MARKET_RULE, rule_id], matcher)

    # Market data

    async def req_market_data(self, contract: Contract, generic_ticks: str = "",
                              snapshot: bool = False) -> Tuple[int, RespCode, Optional[ErrorMessage]]:
        """
        Subscribe streaming top-of-book ticks for contract.

        Returns:
            (request id, code, error); ticks arrive as TickPrice/TickSize
            carrying the request id
        """
        req_id = self.next_request_id()

        def matcher(msg_id: IncomingMessage, message: Any):
            if msg_id == IncomingMessage.MARKET_DATA and isinstance(message, MarketDataTypeMessage):
                if message.request_id == req_id:
                    return message
                return None
            return _error_for(req_id, msg_id, message)

        fields = [
            OutgoingMessage.REQUEST_MARKET_DATA, MARKET_DATA_VERSION, req_id,
            contract.to_fields(),
            False,              # no delta-neutral leg
            generic_ticks, snapshot,
            False,              # regulatory snapshot
            "",
        ]
        code, reply = await self.request(fields, matcher)
        return req_id, code, reply if isinstance(reply, ErrorMessage) else None

    async def cancel_market_data(self, req_id: int) -> None:
        await self.send(OutgoingMessage.CANCEL_MARKET_DATA, CANCEL_MARKET_DATA_VERSION, req_id)

    async def req_historical_data(self, contract: Contract, end_time: datetime, duration: str,
                                  bar_size: str, what_to_show: str, use_rth: bool = True,
                                  keep_up_to_date: bool = False
                                  ) -> Tuple[RespCode, Union[HistoricalDataMessage, ErrorMessage, None]]:
        """
        Args:
            duration: '3600 S', '3 D', '2 W', '1 M', '2 Y'
            bar_size: '1 min', '5 mins', '1 hour', '1 day', ...
            what_to_show: TRADES, MIDPOINT, BID, ASK, AGGTRADES, ...
        """
        req_id = self.next_request_id()

        def matcher(msg_id: IncomingMessage, message: Any):
            if msg_id == IncomingMessage.HISTORICAL_DATA and isinstance(message, HistoricalDataMessage):
                if message.request_id == req_id:
                    return message
                return None
            return _error_for(req_id, msg_id, message)

        fields = [
            OutgoingMessage.REQUEST_HISTORICAL_DATA, req_id,
            contract.to_fields(), contract.include_expired,
            format_end_time(end_time), bar_size, duration, use_rth, what_to_show,
            1,                  # date format: yyyymmdd hh:mm:ss
            keep_up_to_date,
            "",
        ]
        return await self.request(fields, matcher)

    # Orders

    async def place_order(self, contract: Contract, order: GatewayOrder) -> OrderReply:
        """
        Place (or, with a known order id, modify) an order.

        Returns:
            (OK, OrderStatusMessage) for the first status of the order id,
            (OK, ErrorMessage) when the gateway rejects it, (TIMEOUT, None)
        """
        order_id = order.order_id

        def matcher(msg_id: IncomingMessage, message: Any):
            if msg_id == IncomingMessage.ORDER_STATUS and isinstance(message, OrderStatusMessage):
                if message.order_id == order_id:
                    return message
                return None
            return _error_for(order_id, msg_id, message)

        fields = [
            OutgoingMessage.PLACE_ORDER, order_id,
            contract.to_fields(), contract.sec_id_type, contract.sec_id,
            order.to_fields(),
        ]
        return await self.request(fields, matcher)

    async def cancel_order(self, order_id: int, manual_cancel_time: str = "") -> OrderReply:
        """
        Returns:
            (OK, OrderStatusMessage) once the order reports Cancelled,
            (OK, ErrorMessage) for any error but the cancel notice itself
        """
        def matcher(msg_id: IncomingMessage, message: Any):
            if msg_id == IncomingMessage.ORDER_STATUS and isinstance(message, OrderStatusMessage):
                if message.order_id == order_id and message.status == STATUS_CANCELLED:
                    return message
                return None
            error = _error_for(order_id, msg_id, message)
            if error is not None and error.code != ORDER_CANCELLED_NOTICE:
                return error
            return None

        return await self.request(
            [OutgoingMessage.CANCEL_ORDER, CANCEL_ORDER_VERSION, order_id, manual_cancel_time], matcher)

    async def req_global_cancel(self) -> None:
        """Cancel every open order of the account, including ones placed elsewhere."""
        await self.send(OutgoingMessage.REQUEST_GLOBAL_CANCEL, GLOBAL_CANCEL_VERSION)

    async def req_open_orders(self) -> None:
        """Ask for OpenOrder + OrderStatus of every open order of this client."""
        await self.send(OutgoingMessage.REQUEST_OPEN_ORDERS, OPEN_ORDERS_VERSION)
