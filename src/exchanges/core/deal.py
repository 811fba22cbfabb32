"""
Deal derivation from consecutive order observations.

A deal is the increment between the recorded order state and a newer
snapshot. Push snapshots usually carry the explicit last fill; polled
snapshots only carry cumulative (filled, avg_price), so the increment is
priced from the change in filled notional. An explicit last fill is taken
as reported, even when it covers less than the filled increment.
"""

from decimal import Decimal
from typing import Optional

from exchanges.structs import Deal, OrderSnapshot, OrderState, ZERO


def _positive(value: Optional[Decimal]) -> bool:
    return value is not None and value > 0


def derive_deal(state: OrderState, snapshot: OrderSnapshot, local_time: int) -> Optional[Deal]:
    """
    Incremental fill between state and snapshot, or None when nothing filled.

    Price priority:
        1. explicit last fill (price and size as reported)
        2. (filled_new*avg_new - filled_old*avg_old) / delta when both averages are known
        3. the snapshot's resting price (or the order's own price)
    """
    delta = snapshot.filled - state.filled
    if delta <= 0:
        return None

    price: Optional[Decimal] = None
    amount = delta
    if _positive(snapshot.last_fill_price) and _positive(snapshot.last_fill_size):
        price = snapshot.last_fill_price
        amount = snapshot.last_fill_size
    elif _positive(snapshot.avg_price) and (state.filled == 0 or _positive(state.avg_price)):
        old_notional = state.filled * state.avg_price if state.filled > 0 else ZERO
        price = (snapshot.filled * snapshot.avg_price - old_notional) / delta
    elif _positive(snapshot.last_fill_price):
        # Intermediate fills were missed; the last print is the best estimate
        price = snapshot.last_fill_price

    if not _positive(price):
        price = snapshot.price if _positive(snapshot.price) else state.price

    return Deal(order_id=snapshot.venue_id or state.venue_id,
                client_id=state.client_id,
                price=price,
                amount=amount,
                venue_time=snapshot.update_time,
                local_time=local_time)


def next_avg_price(state: OrderState, snapshot: OrderSnapshot, deal: Optional[Deal]) -> Optional[Decimal]:
    """Average fill price after applying snapshot (and its deal) to state."""
    if _positive(snapshot.avg_price):
        return snapshot.avg_price
    if deal is None:
        return state.avg_price
    filled = state.filled + deal.amount
    old_notional = state.filled * state.avg_price if _positive(state.avg_price) else ZERO
    return (old_notional + deal.amount * deal.price) / filled
