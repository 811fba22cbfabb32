from .binance_rest_spot import BinanceSpotRest, BINANCE_SPOT_URL
from .errors import map_error, BinanceResponseProcessor

__all__ = ['BinanceSpotRest', 'BINANCE_SPOT_URL', 'map_error', 'BinanceResponseProcessor']
