from .rest import BinanceSpotRest
from .ws import BinanceUserStream
from .order import BinanceSpotOrder
from .venue import BinanceSpotVenue
from .sources import BinanceKlineSource, BinanceFundingSource

__all__ = [
    'BinanceSpotRest',
    'BinanceUserStream',
    'BinanceSpotOrder',
    'BinanceSpotVenue',
    'BinanceKlineSource',
    'BinanceFundingSource',
]
