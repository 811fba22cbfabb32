from .user_stream import BinanceUserStream

__all__ = ['BinanceUserStream']
