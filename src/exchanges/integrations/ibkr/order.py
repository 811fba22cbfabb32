from decimal import Decimal
from typing import Any, Optional

from exchanges.core.order_engine import OrderEngine
from exchanges.integrations.ibkr.tws_client import TwsClient
from exchanges.integrations.ibkr.utils import from_side, now_ms, open_order_terms, status_to_snapshot
from exchanges.structs import OrderSnapshot, SnapshotSource
from exchanges.structs.enums import RespCode
from infrastructure.exceptions.exchange import ExchangeBusinessError, ExchangeTimeoutError
from infrastructure.networking.tcp.messages import (
    Contract, ErrorMessage, GatewayOrder, OpenOrderMessage, OrderStatusMessage
)

# Order cancelled notice, and "cannot be cancelled, state: Cancelled"
BENIGN_CANCEL_CODES = frozenset({202, 10148})


def check_reply(operation: str, code: RespCode, reply: Any) -> Optional[OrderStatusMessage]:
    """
    Map a gateway order reply onto the exchange exception family.

    Raises:
        ExchangeTimeoutError: No reply within the request timeout
        ExchangeBusinessError: Gateway error addressed to the order
    """
    if code == RespCode.TIMEOUT:
        raise ExchangeTimeoutError(408, f"{operation} timed out")
    if isinstance(reply, ErrorMessage):
        raise ExchangeBusinessError(400, reply.message, api_code=reply.code)
    return reply if isinstance(reply, OrderStatusMessage) else None


class IbkrOrder(OrderEngine):
    """
    Limit order placed through the gateway.

    The client id is the gateway order id taken from the session's id
    sequence; the venue id is the permanent id the first status reports.
    The gateway publishes no frozen balances, so the order reserves its
    remaining value client-side. A modify re-places the order under the
    same order id.
    """

    tracks_frozen = True
    supports_modify = True

    def __init__(self, tws: TwsClient, contract: Contract, order_id: int,
                 time_in_force: str = "GTC", account: str = "", **kwargs):
        super().__init__('ibkr', client_id=str(order_id), **kwargs)
        self.tws = tws
        self.contract = contract
        self.order_id = order_id
        self.time_in_force = time_in_force
        self.account = account

    def _gateway_order(self, price: Decimal, size: Decimal) -> GatewayOrder:
        return GatewayOrder(order_id=self.order_id, action=from_side(self.side),
                            total_quantity=size, lmt_price=price, tif=self.time_in_force,
                            account=self.account, order_ref=self.purpose)

    async def _send_create(self) -> Optional[str]:
        code, reply = await self.tws.place_order(self.contract,
                                                 self._gateway_order(self.state.price, self.state.size))
        status = check_reply("place order", code, reply)
        if status is None:
            return None
        self.apply_snapshot(status_to_snapshot(status))
        return str(status.perm_id) if status.perm_id else None

    async def _send_cancel(self) -> Optional[OrderSnapshot]:
        code, reply = await self.tws.cancel_order(self.order_id)
        status = check_reply("cancel order", code, reply)
        return status_to_snapshot(status) if status is not None else None

    async def _send_modify(self, price: Decimal, size: Decimal) -> Optional[OrderSnapshot]:
        code, reply = await self.tws.place_order(self.contract, self._gateway_order(price, size))
        status = check_reply("modify order", code, reply)
        return status_to_snapshot(status) if status is not None else None

    async def _fetch_snapshot(self) -> Optional[OrderSnapshot]:
        # No per-order query; the gateway answers with pushes for every open order
        await self.tws.req_open_orders()
        return None

    def _is_benign_cancel_error(self, error: ExchangeBusinessError) -> bool:
        return error.api_code in BENIGN_CANCEL_CODES

    def on_order_status(self, msg: OrderStatusMessage) -> None:
        self.apply_snapshot(status_to_snapshot(msg))

    def on_open_order(self, msg: OpenOrderMessage) -> None:
        """Resting terms after a modify; fills still come from OrderStatus."""
        price, size = open_order_terms(msg)
        st = self.state
        self.apply_snapshot(OrderSnapshot(
            update_time=max(now_ms(), st.update_time),
            filled=st.filled,
            status=st.status,
            price=price,
            size=size,
            venue_id=str(msg.perm_id) if msg.perm_id else None,
            client_id=self.client_id,
            source=SnapshotSource.PUSH,
        ))
