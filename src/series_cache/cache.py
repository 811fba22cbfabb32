"""
Chunked time-series cache with gap-filling pulls.

For a requested range the cache walks the chunk buckets in time order.
Buckets found on disk are used as-is; consecutive missing buckets are merged
into one gap and pulled from the venue in a single paged run. Pulled points
are persisted per bucket, except for the still-forming current bucket, and
the merged result is truncated to [t0, t1).

History is assumed contiguous at the declared granularity: a chunk on disk
is taken as complete for its bucket.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from config.structs import CacheConfig, RateLimitConfig
from exchanges.structs import ContractKind, FundingRate, Kline
from infrastructure.exceptions.exchange import ExchangeBusinessError, ExchangeRestError, RateLimitErrorRest
from infrastructure.exceptions.system import ConnectionClosedError
from infrastructure.logging import HFTLoggerInterface, LoggingTimer, get_logger
from .buckets import Bucket, BucketFn, bar_name, current_bucket, day_bucket, enumerate_buckets, month_bucket
from .stores import FundingChunkStore, KlineChunkStore

T = TypeVar('T')

ProgressCallback = Callable[[int], None]
PageFn = Callable[[int, int, int], Awaitable[List[T]]]

# Funding settlements are hours apart; resume just past the last one
FUNDING_CURSOR_STEP_MS = 1000

PULL_ERRORS = (ExchangeRestError, ConnectionClosedError, asyncio.TimeoutError)


class KlineSource(Protocol):
    venue: str

    async def fetch_klines(self, symbol: str, interval_sec: int, start_ms: int, end_ms: int,
                           limit: int) -> List[Kline]:
        ...


class FundingSource(Protocol):
    venue: str

    async def fetch_funding(self, symbol: str, start_ms: int, end_ms: int, limit: int) -> List[FundingRate]:
        ...


class SeriesCache:
    """
    Args:
        cache_config: Disk layer settings (root, kill switch)
        rate_limit: Pull pacing, error backoff and page size
        kline_source: Venue page function for klines
        funding_source: Venue page function for funding rates
        clock: Millisecond wall clock deciding the current bucket
    """

    def __init__(self, cache_config: Optional[CacheConfig] = None,
                 rate_limit: Optional[RateLimitConfig] = None,
                 kline_source: Optional[KlineSource] = None,
                 funding_source: Optional[FundingSource] = None,
                 clock: Optional[Callable[[], int]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 logger: Optional[HFTLoggerInterface] = None):
        self.config = cache_config or CacheConfig()
        self.rate_limit = rate_limit or RateLimitConfig()
        self.kline_source = kline_source
        self.funding_source = funding_source
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._sleep = sleep
        self.logger = logger or get_logger('series_cache')

        self._kline_stores: Dict[str, KlineChunkStore] = {}
        self._funding_stores: Dict[str, FundingChunkStore] = {}

    def _kline_store(self, venue: str) -> KlineChunkStore:
        store = self._kline_stores.get(venue)
        if store is None:
            store = self._kline_stores[venue] = KlineChunkStore(self.config.root, venue, self.logger)
        return store

    def _funding_store(self, venue: str) -> FundingChunkStore:
        store = self._funding_stores.get(venue)
        if store is None:
            store = self._funding_stores[venue] = FundingChunkStore(self.config.root, venue, self.logger)
        return store

    # -- public API --

    async def get_klines(self, instrument: str, t0: int, t1: int, interval_sec: int,
                         kind: ContractKind = ContractKind.SPOT,
                         progress: Optional[ProgressCallback] = None) -> List[Kline]:
        """
        Klines with open_time in [t0, t1), strictly increasing.

        Raises:
            ValueError: If the interval has no cached bar or no kline source is set
        """
        if self.kline_source is None:
            raise ValueError("No kline source configured")
        bar = bar_name(interval_sec)
        source = self.kline_source
        store = self._kline_store(source.venue)
        interval_ms = interval_sec * 1000

        async def page(start: int, end: int, limit: int) -> List[Kline]:
            return await source.fetch_klines(instrument, interval_sec, start, end, limit)

        with LoggingTimer(self.logger, "get_klines", instrument=instrument, bar=bar):
            return await self._collect(
                t0, t1, day_bucket,
                load=lambda b: store.load(kind.value, instrument, bar, b),
                save=lambda b, points: store.save(kind.value, instrument, bar, b, points),
                page=page,
                ts_of=lambda k: k.open_time,
                cursor_step=interval_ms,
                progress=progress,
            )

    async def get_funding_fees(self, instrument: str, t0: int, t1: int,
                               progress: Optional[ProgressCallback] = None) -> List[FundingRate]:
        """
        Funding rates with funding_time in [t0, t1), strictly increasing.

        Raises:
            ValueError: If no funding source is set
        """
        if self.funding_source is None:
            raise ValueError("No funding source configured")
        source = self.funding_source
        store = self._funding_store(source.venue)

        async def page(start: int, end: int, limit: int) -> List[FundingRate]:
            return await source.fetch_funding(instrument, start, end, limit)

        with LoggingTimer(self.logger, "get_funding_fees", instrument=instrument):
            return await self._collect(
                t0, t1, month_bucket,
                load=lambda b: store.load(instrument, b),
                save=lambda b, points: store.save(instrument, b, points),
                page=page,
                ts_of=lambda r: r.funding_time,
                cursor_step=FUNDING_CURSOR_STEP_MS,
                progress=progress,
            )

    # -- merge --

    async def _collect(self, t0: int, t1: int, bucket_fn: BucketFn, load, save, page: PageFn,
                       ts_of: Callable[[T], int], cursor_step: int,
                       progress: Optional[ProgressCallback]) -> List[T]:
        if t1 <= t0:
            return []
        buckets = enumerate_buckets(t0, t1, bucket_fn)
        forming = current_bucket(bucket_fn, self._clock())
        result: List[T] = []
        gap_start: Optional[int] = None
        gap_end: Optional[int] = None

        async def fill_gap() -> None:
            fetched, covered = await self._pull(page, gap_start, gap_end, ts_of, cursor_step, progress)
            _extend_ordered(result, fetched, ts_of)
            if self.config.enabled:
                await self._persist(fetched, bucket_fn, forming, covered, save, ts_of)

        for bucket in buckets:
            cached = await load(bucket) if self.config.enabled else None
            if cached is not None:
                if gap_start is not None:
                    await fill_gap()
                    gap_start = gap_end = None
                _extend_ordered(result, cached, ts_of)
                if progress is not None:
                    progress(bucket.end)
            else:
                if gap_start is None:
                    gap_start = bucket.start
                gap_end = bucket.end

        if gap_start is not None:
            await fill_gap()

        return [p for p in result if t0 <= ts_of(p) < t1]

    async def _persist(self, points: List[T], bucket_fn: BucketFn, forming: Bucket, covered: int, save,
                       ts_of: Callable[[T], int]) -> None:
        grouped: Dict[Bucket, List[T]] = {}
        for point in points:
            bucket = bucket_fn(ts_of(point))
            # The forming bucket and anything after it is still incomplete
            if bucket.start >= forming.start:
                continue
            # Only buckets the pull walked through completely
            if bucket.end > covered:
                continue
            grouped.setdefault(bucket, []).append(point)
        for bucket, bucket_points in grouped.items():
            if await save(bucket, bucket_points):
                self.logger.debug(f"Persisted chunk {bucket.label}", points=len(bucket_points))

    async def _pull(self, page: PageFn, start: int, end: int, ts_of: Callable[[T], int],
                    cursor_step: int, progress: Optional[ProgressCallback]) -> Tuple[List[T], int]:
        """
        Page forward through [start, end).

        Returns:
            (points, covered): covered is end after a complete pull, or the
            cursor the pull gave up at once errors ran out
        """
        limit = self.rate_limit.page_limit
        points: List[T] = []
        cursor = start
        covered = end
        errors = 0
        first = True

        while cursor < end:
            if not first:
                await self._sleep(self.rate_limit.min_interval_ms / 1000)
            first = False
            backoff = self.rate_limit.error_backoff
            try:
                batch = await page(cursor, end, limit)
            except RateLimitErrorRest as e:
                failure = e
                backoff = max(backoff, e.retry_after or 0.0)
            except ExchangeBusinessError:
                raise
            except PULL_ERRORS as e:
                failure = e
            else:
                failure = None

            if failure is not None:
                errors += 1
                if errors >= self.rate_limit.max_errors:
                    self.logger.error(f"Giving up pull after {errors} errors, returning partial result",
                                      cursor=cursor, end=end, error=str(failure))
                    covered = cursor
                    break
                self.logger.warning(f"Pull failed ({errors}/{self.rate_limit.max_errors}): {failure}",
                                    cursor=cursor)
                await self._sleep(backoff)
                continue

            full_page = len(batch) >= limit
            batch = [p for p in batch if cursor <= ts_of(p) < end]
            if not batch:
                break
            _extend_ordered(points, batch, ts_of)
            cursor = ts_of(points[-1]) + cursor_step
            if progress is not None:
                progress(cursor)
            if not full_page:
                break

        self.logger.info(f"Pulled {len(points)} points", start=start, end=end, covered=covered)
        return points, covered


def _extend_ordered(target: List[T], points: List[T], ts_of: Callable[[T], int]) -> None:
    """Append points keeping target strictly increasing in time."""
    last = ts_of(target[-1]) if target else None
    for point in sorted(points, key=ts_of):
        ts = ts_of(point)
        if last is not None and ts <= last:
            continue
        target.append(point)
        last = ts
