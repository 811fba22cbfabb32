"""
Deal derivation between consecutive order observations.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from decimal import Decimal

from exchanges.core.deal import derive_deal, next_avg_price
from exchanges.structs import OrderSnapshot, OrderState, OrderStatus, Side

D = Decimal


def _state(filled="0", avg=None, price="100"):
    return OrderState(client_id="c1", instrument_id="BTC_USDT", side=Side.BUY, price=D(price),
                      size=D("10"), venue_id="v1", filled=D(filled),
                      avg_price=D(avg) if avg else None)


def _snap(filled, avg=None, last_price=None, last_size=None, price=None):
    return OrderSnapshot(update_time=1, filled=D(filled), status=OrderStatus.PARTIALLY_FILLED,
                         avg_price=D(avg) if avg else None,
                         last_fill_price=D(last_price) if last_price else None,
                         last_fill_size=D(last_size) if last_size else None,
                         price=D(price) if price else None)


class TestDeriveDeal:

    def test_no_increase_no_deal(self):
        assert derive_deal(_state("2", "100"), _snap("2", "100"), 0) is None

    def test_explicit_last_fill_wins(self):
        deal = derive_deal(_state("1", "100"), _snap("3", "101", last_price="99.5", last_size="2"), 7)
        assert deal.amount == D("2")
        assert deal.price == D("99.5")
        assert deal.local_time == 7
        assert deal.order_id == "v1"

    def test_price_from_notional_delta(self):
        # 2 @ 100 then 4 @ avg 101 -> the 2 new units cost 102
        deal = derive_deal(_state("2", "100"), _snap("4", "101"), 0)
        assert deal.amount == D("2")
        assert deal.price == D("102")

    def test_last_fill_taken_as_reported(self):
        # Filled jumped by 3 but the push reports only the last 1 @ 101
        deal = derive_deal(_state("0"), _snap("3", "100", last_price="101", last_size="1"), 0)
        assert deal.amount == D("1")
        assert deal.price == D("101")

    def test_last_print_when_no_averages(self):
        deal = derive_deal(_state("1", None), _snap("2", None, last_price="98"), 0)
        assert deal.price == D("98")

    def test_order_price_as_last_resort(self):
        deal = derive_deal(_state("0"), _snap("1"), 0)
        assert deal.price == D("100")

    def test_sum_of_deals_matches_filled(self):
        state = _state()
        total = D(0)
        for filled, avg in (("1", "100"), ("4", "100.75"), ("10", "101")):
            snap = _snap(filled, avg)
            deal = derive_deal(state, snap, 0)
            total += deal.amount
            state.avg_price = next_avg_price(state, snap, deal)
            state.filled = snap.filled
        assert total == state.filled


class TestNextAvgPrice:

    def test_snapshot_average_preferred(self):
        assert next_avg_price(_state("1", "100"), _snap("2", "101"), None) == D("101")

    def test_average_from_deal(self):
        state = _state("1", "100")
        snap = _snap("2", None, last_price="102", last_size="1")
        deal = derive_deal(state, snap, 0)
        assert next_avg_price(state, snap, deal) == D("101")
