"""
Series Cache

Disk-backed kline and funding-rate history with gap-filling venue pulls.

Usage:
    cache = SeriesCache(config.get_cache_config(), config.get_rate_limit_config(),
                        kline_source=BinanceKlineSource(rest))
    klines = await cache.get_klines('BTCUSDT', t0, t1, interval_sec=60)
"""

from .buckets import Bucket, bar_name, day_bucket, month_bucket, day_buckets, month_buckets, current_bucket
from .stores import KlineChunkStore, FundingChunkStore, KLINE_DTYPE
from .cache import SeriesCache, KlineSource, FundingSource

__all__ = [
    'Bucket',
    'bar_name',
    'day_bucket',
    'month_bucket',
    'day_buckets',
    'month_buckets',
    'current_bucket',
    'KlineChunkStore',
    'FundingChunkStore',
    'KLINE_DTYPE',
    'SeriesCache',
    'KlineSource',
    'FundingSource',
]
