"""
Venue-independent trading core: catalog, books, balances, the per-order
state machine, and the market/trader/hub sessions built on them.
"""

from .instrument_registry import InstrumentRegistry
from .orderbook import OrderBookMirror
from .balance_ledger import BalanceLedger
from .deal import derive_deal, next_avg_price
from .order_engine import OrderEngine, DealObserver, make_client_id
from .trading_hours import TradingHours
from .market_session import MarketSession, TICKER, DEPTH
from .trader_session import TraderSession
from .venue_hub import VenueHub

__all__ = [
    'InstrumentRegistry',
    'OrderBookMirror',
    'BalanceLedger',
    'derive_deal',
    'next_avg_price',
    'OrderEngine',
    'DealObserver',
    'make_client_id',
    'TradingHours',
    'MarketSession',
    'TICKER',
    'DEPTH',
    'TraderSession',
    'VenueHub',
]
