"""
Series cache: bucketing, chunk stores and the gap-filling merge of cached
chunks with venue pulls.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from unittest.mock import AsyncMock, call

import pytest

from config.structs import CacheConfig, RateLimitConfig
from exchanges.structs import ContractKind, FundingRate, Kline
from infrastructure.exceptions.exchange import ExchangeConnectionRestError, InvalidSymbolError, RateLimitErrorRest
from series_cache import (
    Bucket, FundingChunkStore, KlineChunkStore, KLINE_DTYPE, SeriesCache, bar_name, day_bucket, day_buckets,
    month_bucket, month_buckets,
)

HOUR = 3_600_000
DAY = 24 * HOUR
T0 = 1_704_067_200_000          # 2024-01-01 00:00 UTC
NOW = T0 + 10 * DAY


def kline(open_time: int) -> Kline:
    return Kline(open_time=open_time, open=1.0, high=2.0, low=0.5,
                 close=float(open_time // HOUR % 24), volume=10.0, quote_volume=15.0)


class HourlyKlines:
    """Venue page function over an endless hourly series ending at `until`."""

    venue = "binance"

    def __init__(self, until: int = NOW, failures=()):
        self.until = until
        self.failures = list(failures)
        self.calls = []

    async def fetch_klines(self, symbol, interval_sec, start_ms, end_ms, limit):
        self.calls.append((start_ms, end_ms, limit))
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error
        step = interval_sec * 1000
        t = -(-start_ms // step) * step
        out = []
        while t < min(end_ms, self.until) and len(out) < limit:
            out.append(kline(t))
            t += step
        return out


class EightHourFunding:
    venue = "binance"

    def __init__(self):
        self.calls = []

    async def fetch_funding(self, symbol, start_ms, end_ms, limit):
        self.calls.append((start_ms, end_ms, limit))
        step = 8 * HOUR
        t = -(-start_ms // step) * step
        out = []
        while t < end_ms and len(out) < limit:
            out.append(FundingRate(symbol=symbol, funding_time=t, funding_rate=0.0001, mark_price=42000.0))
            t += step
        return out


@pytest.fixture
def make_cache(tmp_path):
    def factory(kline_source=None, funding_source=None, enabled=True, page_limit=1000, max_errors=5, now=NOW):
        return SeriesCache(CacheConfig(enabled=enabled, root=str(tmp_path)),
                           RateLimitConfig(min_interval_ms=0, error_backoff=0.0, max_errors=max_errors,
                                           page_limit=page_limit),
                           kline_source=kline_source, funding_source=funding_source,
                           clock=lambda: now, sleep=AsyncMock())
    return factory


def chunk_path(root, label, bar="1h"):
    return root / "binance" / "klines" / "spot" / "BTCUSDT" / bar / f"{label}.kline"


class TestBuckets:

    def test_day_bucket(self):
        assert day_bucket(T0 + 5 * HOUR) == Bucket(T0, T0 + DAY, "2024-01-01")
        assert day_bucket(T0 + DAY - 1).label == "2024-01-01"
        assert day_bucket(T0 + DAY).label == "2024-01-02"

    def test_month_bucket_wraps_year(self):
        december = month_bucket(T0 - 15 * DAY)
        assert december.label == "2023-12"
        assert december.end == T0

    def test_day_buckets_half_open(self):
        assert [b.label for b in day_buckets(T0 + HOUR, T0 + 2 * DAY)] == ["2024-01-01", "2024-01-02"]
        assert len(day_buckets(T0, T0 + DAY)) == 1
        assert day_buckets(T0, T0) == []

    def test_month_buckets(self):
        labels = [b.label for b in month_buckets(T0, T0 + 40 * DAY)]
        assert labels == ["2024-01", "2024-02"]

    def test_bar_name(self):
        assert bar_name(60) == "1m"
        assert bar_name(3600) == "1h"
        with pytest.raises(ValueError):
            bar_name(7)


class TestChunkStores:

    @pytest.mark.asyncio
    async def test_kline_chunk_written_once(self, tmp_path):
        store = KlineChunkStore(str(tmp_path), "binance")
        bucket = day_bucket(T0)
        points = [kline(T0), kline(T0 + HOUR)]

        assert await store.save("spot", "BTCUSDT", "1h", bucket, points)
        assert not await store.save("spot", "BTCUSDT", "1h", bucket, [kline(T0)])

        path = chunk_path(tmp_path, "2024-01-01")
        assert path.stat().st_size == 2 * KLINE_DTYPE.itemsize
        assert await store.load("spot", "BTCUSDT", "1h", bucket) == points
        assert not list(path.parent.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_empty_chunk_not_written(self, tmp_path):
        store = KlineChunkStore(str(tmp_path), "binance")
        assert not await store.save("spot", "BTCUSDT", "1h", day_bucket(T0), [])
        assert await store.load("spot", "BTCUSDT", "1h", day_bucket(T0)) is None

    @pytest.mark.asyncio
    async def test_truncated_chunk_ignored(self, tmp_path):
        path = chunk_path(tmp_path, "2024-01-01")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\x00" * (KLINE_DTYPE.itemsize + 3))

        store = KlineChunkStore(str(tmp_path), "binance")
        assert await store.load("spot", "BTCUSDT", "1h", day_bucket(T0)) is None

    @pytest.mark.asyncio
    async def test_funding_chunk_is_json(self, tmp_path):
        store = FundingChunkStore(str(tmp_path), "binance")
        bucket = month_bucket(T0)
        rates = [FundingRate(symbol="BTCUSDT", funding_time=T0, funding_rate=0.0001)]

        await store.save("BTCUSDT", bucket, rates)

        path = tmp_path / "binance" / "fundingfees" / "BTCUSDT" / "2024-01.json"
        assert path.read_text().startswith('[{"symbol":"BTCUSDT"')
        assert await store.load("BTCUSDT", bucket) == rates


class TestGetKlines:

    @pytest.mark.asyncio
    async def test_cold_pull_persists_every_day(self, make_cache, tmp_path):
        source = HourlyKlines()
        cache = make_cache(source)

        klines = await cache.get_klines("BTCUSDT", T0, T0 + 3 * DAY, 3600)

        assert len(klines) == 72
        assert [k.open_time for k in klines] == [T0 + i * HOUR for i in range(72)]
        assert source.calls == [(T0, T0 + 3 * DAY, 1000)]
        for label in ("2024-01-01", "2024-01-02", "2024-01-03"):
            assert chunk_path(tmp_path, label).exists()

    @pytest.mark.asyncio
    async def test_contract_kinds_cached_apart(self, make_cache, tmp_path):
        source = HourlyKlines()
        cache = make_cache(source)

        await cache.get_klines("BTCUSDT", T0, T0 + DAY, 3600)
        await cache.get_klines("BTCUSDT", T0, T0 + DAY, 3600, kind=ContractKind.PERPETUAL)

        assert len(source.calls) == 2
        assert chunk_path(tmp_path, "2024-01-01").exists()
        assert (tmp_path / "binance" / "klines" / "perpetual" / "BTCUSDT" / "1h" / "2024-01-01.kline").exists()

    @pytest.mark.asyncio
    async def test_cached_days_served_from_disk(self, make_cache):
        source = HourlyKlines()
        cache = make_cache(source)
        first = await cache.get_klines("BTCUSDT", T0, T0 + 2 * DAY, 3600)

        progress = []
        again = await make_cache(source).get_klines("BTCUSDT", T0, T0 + 2 * DAY, 3600, progress=progress.append)

        assert again == first
        assert len(source.calls) == 1
        assert progress == [T0 + DAY, T0 + 2 * DAY]

    @pytest.mark.asyncio
    async def test_missing_days_merged_into_gaps(self, make_cache):
        source = HourlyKlines()
        cache = make_cache(source)
        await cache.get_klines("BTCUSDT", T0 + DAY, T0 + 2 * DAY, 3600)
        source.calls.clear()

        klines = await cache.get_klines("BTCUSDT", T0, T0 + 4 * DAY, 3600)

        assert source.calls == [(T0, T0 + DAY, 1000), (T0 + 2 * DAY, T0 + 4 * DAY, 1000)]
        assert [k.open_time for k in klines] == [T0 + i * HOUR for i in range(96)]

    @pytest.mark.asyncio
    async def test_result_truncated_to_range(self, make_cache):
        klines = await make_cache(HourlyKlines()).get_klines("BTCUSDT", T0 + 90 * 60_000, T0 + 5 * HOUR, 3600)
        assert [k.open_time for k in klines] == [T0 + 2 * HOUR, T0 + 3 * HOUR, T0 + 4 * HOUR]

    @pytest.mark.asyncio
    async def test_forming_day_never_written(self, make_cache, tmp_path):
        now = T0 + DAY + 12 * HOUR
        source = HourlyKlines(until=now)
        cache = make_cache(source, now=now)

        klines = await cache.get_klines("BTCUSDT", T0, now, 3600)

        assert len(klines) == 36
        assert chunk_path(tmp_path, "2024-01-01").exists()
        assert not chunk_path(tmp_path, "2024-01-02").exists()

        await cache.get_klines("BTCUSDT", T0, now, 3600)
        assert source.calls[-1] == (T0 + DAY, T0 + 2 * DAY, 1000)

    @pytest.mark.asyncio
    async def test_disabled_cache_always_pulls(self, make_cache, tmp_path):
        source = HourlyKlines()
        cache = make_cache(source, enabled=False)

        await cache.get_klines("BTCUSDT", T0, T0 + DAY, 3600)
        await cache.get_klines("BTCUSDT", T0, T0 + DAY, 3600)

        assert len(source.calls) == 2
        assert not list(tmp_path.iterdir())

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, make_cache):
        source = HourlyKlines()
        cache = make_cache(source, page_limit=10)

        klines = await cache.get_klines("BTCUSDT", T0, T0 + DAY, 3600)

        assert len(klines) == 24
        assert [call[0] for call in source.calls] == [T0, T0 + 10 * HOUR, T0 + 20 * HOUR]
        assert cache._sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_partial_result_after_repeated_errors(self, make_cache, tmp_path):
        down = ExchangeConnectionRestError(503, "unavailable")
        source = HourlyKlines(failures=[None, down, down, down])
        cache = make_cache(source, page_limit=30, max_errors=3)

        klines = await cache.get_klines("BTCUSDT", T0, T0 + 2 * DAY, 3600)

        assert len(klines) == 30
        assert len(source.calls) == 4
        # The first day was walked through completely, the second was not
        assert chunk_path(tmp_path, "2024-01-01").exists()
        assert not chunk_path(tmp_path, "2024-01-02").exists()

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, make_cache):
        source = HourlyKlines(failures=[ExchangeConnectionRestError(0, "reset")])
        klines = await make_cache(source).get_klines("BTCUSDT", T0, T0 + DAY, 3600)
        assert len(klines) == 24
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_and_retries(self, make_cache):
        throttled = RateLimitErrorRest(429, "too many requests", api_code=-1003, retry_after=30.0)
        source = HourlyKlines(failures=[throttled])
        cache = make_cache(source)

        klines = await cache.get_klines("BTCUSDT", T0, T0 + DAY, 3600)

        assert len(klines) == 24
        assert len(source.calls) == 2
        assert call(30.0) in cache._sleep.await_args_list

    @pytest.mark.asyncio
    async def test_rate_limit_counts_toward_error_budget(self, make_cache, tmp_path):
        throttled = RateLimitErrorRest(429, "too many requests", api_code=-1003)
        source = HourlyKlines(failures=[None, throttled, throttled])
        cache = make_cache(source, page_limit=30, max_errors=2)

        klines = await cache.get_klines("BTCUSDT", T0, T0 + 2 * DAY, 3600)

        assert len(klines) == 30
        assert chunk_path(tmp_path, "2024-01-01").exists()
        assert not chunk_path(tmp_path, "2024-01-02").exists()

    @pytest.mark.asyncio
    async def test_business_error_propagates(self, make_cache, tmp_path):
        source = HourlyKlines(failures=[InvalidSymbolError(400, "Invalid symbol.", api_code=-1121)])
        with pytest.raises(InvalidSymbolError):
            await make_cache(source).get_klines("BTCUSDT", T0, T0 + DAY, 3600)
        assert not chunk_path(tmp_path, "2024-01-01").exists()

    @pytest.mark.asyncio
    async def test_invalid_requests(self, make_cache):
        with pytest.raises(ValueError):
            await make_cache(HourlyKlines()).get_klines("BTCUSDT", T0, T0 + DAY, 7)
        with pytest.raises(ValueError):
            await make_cache().get_klines("BTCUSDT", T0, T0 + DAY, 3600)
        assert await make_cache(HourlyKlines()).get_klines("BTCUSDT", T0, T0, 3600) == []


class TestGetFundingFees:

    @pytest.mark.asyncio
    async def test_month_chunk_pulled_and_persisted(self, make_cache, tmp_path):
        source = EightHourFunding()
        cache = make_cache(funding_source=source, now=T0 + 40 * DAY)

        rates = await cache.get_funding_fees("BTCUSDT", T0, T0 + 2 * DAY)

        assert [r.funding_time for r in rates] == [T0 + i * 8 * HOUR for i in range(6)]
        assert source.calls == [(T0, T0 + 31 * DAY, 1000)]
        assert (tmp_path / "binance" / "fundingfees" / "BTCUSDT" / "2024-01.json").exists()

        again = await cache.get_funding_fees("BTCUSDT", T0 + DAY, T0 + 3 * DAY)
        assert len(source.calls) == 1
        assert [r.funding_time for r in again] == [T0 + DAY + i * 8 * HOUR for i in range(6)]

    @pytest.mark.asyncio
    async def test_requires_source(self, make_cache):
        with pytest.raises(ValueError):
            await make_cache().get_funding_fees("BTCUSDT", T0, T0 + DAY)
