"""
IBKR integration over the TWS / IB Gateway socket protocol.

Usage:
    venue = IbkrVenue(config.get_ibkr_config(), config.get_balance_config())
    await venue.start()
    trader = venue.make_trader('IBIT')
"""

from .tws_client import TwsClient
from .order import IbkrOrder, BENIGN_CANCEL_CODES
from .venue import IbkrVenue, QuoteFeed

__all__ = [
    'TwsClient',
    'IbkrOrder',
    'BENIGN_CANCEL_CODES',
    'IbkrVenue',
    'QuoteFeed',
]
