"""
Binance page functions for the series cache.

Each source answers one forward page of history starting at start_ms; the
cache owns pacing, retries and persistence.
"""

from typing import List, Optional

import aiohttp

from config.structs import NetworkConfig
from exchanges.integrations.binance.rest.binance_rest_spot import BinanceSpotRest
from exchanges.integrations.binance.rest.errors import BinanceResponseProcessor, map_error
from exchanges.integrations.binance.structs.exchange import BinanceFundingRateResponse
from exchanges.structs import FundingRate, Kline
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger
from infrastructure.networking.http import RestCaller, get_session_state
from series_cache.buckets import bar_name

BINANCE_FUTURES_URL = "https://fapi.binance.com"


def row_to_kline(row: list) -> Kline:
    return Kline(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
        quote_volume=float(row[7]) if len(row) > 7 else 0.0,
    )


class BinanceKlineSource:
    venue = 'binance'

    def __init__(self, rest: BinanceSpotRest):
        self.rest = rest

    async def fetch_klines(self, symbol: str, interval_sec: int, start_ms: int, end_ms: int,
                           limit: int) -> List[Kline]:
        rows = await self.rest.get_klines(symbol, bar_name(interval_sec), start_time=start_ms,
                                          end_time=end_ms - 1, limit=limit)
        return [row_to_kline(row) for row in rows or []]


class BinanceFundingSource:
    """Settled funding rates of USD-M perpetuals (public endpoint, no signing)."""
    venue = 'binance'

    def __init__(self, base_url: str = BINANCE_FUTURES_URL,
                 network_config: Optional[NetworkConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 logger: Optional[HFTLoggerInterface] = None):
        self.logger = logger or get_exchange_logger('binance', 'funding')
        session_state = get_session_state('binance_futures')
        self._caller = RestCaller(
            venue='binance_futures',
            base_url=base_url,
            network_config=network_config,
            error_mapper=map_error,
            response_processor=BinanceResponseProcessor(session_state, "futures", self.logger),
            session_state=session_state,
            session=session,
            logger=self.logger,
        )

    async def fetch_funding(self, symbol: str, start_ms: int, end_ms: int, limit: int) -> List[FundingRate]:
        params = {'symbol': symbol, 'startTime': start_ms, 'endTime': end_ms - 1, 'limit': limit}
        records = await self._caller.get('/fapi/v1/fundingRate', params=params,
                                         result_type=List[BinanceFundingRateResponse])
        return [
            FundingRate(
                symbol=r.symbol,
                funding_time=r.fundingTime,
                funding_rate=float(r.fundingRate),
                mark_price=float(r.markPrice) if r.markPrice else 0.0,
            )
            for r in records or []
        ]

    async def close(self) -> None:
        await self._caller.close()
