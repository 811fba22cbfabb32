from typing import Optional

from exchanges.core.order_engine import OrderEngine
from exchanges.integrations.binance.rest.binance_rest_spot import BinanceSpotRest
from exchanges.integrations.binance.utils import (
    cancel_to_snapshot, from_side, rest_to_snapshot
)
from exchanges.structs import OrderSnapshot


class BinanceSpotOrder(OrderEngine):
    """
    Spot limit order. The account stream reports locked balances, so no
    client-side frozen reservation is kept. Orders are addressed by client
    order id everywhere, which lets a create with an unknown outcome be
    found by the poll loop.
    """

    def __init__(self, rest: BinanceSpotRest, **kwargs):
        super().__init__('binance', **kwargs)
        self.rest = rest

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    async def _send_create(self) -> Optional[str]:
        st = self.state
        reply = await self.rest.place_order(
            symbol=self.symbol,
            side=from_side(st.side),
            order_type='LIMIT_MAKER' if self.post_only else 'LIMIT',
            client_order_id=st.client_id,
            price=st.price,
            quantity=st.size,
        )
        self.apply_snapshot(rest_to_snapshot(reply))
        return str(reply.orderId) if reply.orderId else None

    async def _send_cancel(self) -> Optional[OrderSnapshot]:
        reply = await self.rest.cancel_order(self.symbol, client_order_id=self.client_id)
        return cancel_to_snapshot(reply)

    async def _fetch_snapshot(self) -> Optional[OrderSnapshot]:
        reply = await self.rest.get_order(self.symbol, client_order_id=self.client_id)
        return rest_to_snapshot(reply)
