"""
Chunk bucketing for cached series.

Buckets are half-open UTC intervals [start, end) in milliseconds. Klines are
chunked per day, funding rates per month.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, NamedTuple, Optional

_BAR_NAMES = {
    60: '1m',
    180: '3m',
    300: '5m',
    900: '15m',
    1800: '30m',
    3600: '1h',
    7200: '2h',
    14400: '4h',
    21600: '6h',
    28800: '8h',
    43200: '12h',
    86400: '1d',
}


def bar_name(interval_sec: int) -> str:
    """
    Raises:
        ValueError: If the interval has no cached bar
    """
    try:
        return _BAR_NAMES[interval_sec]
    except KeyError:
        raise ValueError(f"Unsupported kline interval: {interval_sec}s") from None


class Bucket(NamedTuple):
    start: int
    end: int
    label: str

    def contains(self, ts: int) -> bool:
        return self.start <= ts < self.end


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _utc(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)


def day_bucket(ts_ms: int) -> Bucket:
    day = _utc(ts_ms).replace(hour=0, minute=0, second=0, microsecond=0)
    return Bucket(_to_ms(day), _to_ms(day + timedelta(days=1)), day.strftime('%Y-%m-%d'))


def month_bucket(ts_ms: int) -> Bucket:
    month = _utc(ts_ms).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if month.month == 12:
        following = month.replace(year=month.year + 1, month=1)
    else:
        following = month.replace(month=month.month + 1)
    return Bucket(_to_ms(month), _to_ms(following), month.strftime('%Y-%m'))


BucketFn = Callable[[int], Bucket]


def enumerate_buckets(t0: int, t1: int, bucket_fn: BucketFn) -> List[Bucket]:
    """Buckets covering [t0, t1) in time order."""
    buckets = []
    if t1 <= t0:
        return buckets
    bucket = bucket_fn(t0)
    while bucket.start < t1:
        buckets.append(bucket)
        bucket = bucket_fn(bucket.end)
    return buckets


def day_buckets(t0: int, t1: int) -> List[Bucket]:
    return enumerate_buckets(t0, t1, day_bucket)


def month_buckets(t0: int, t1: int) -> List[Bucket]:
    return enumerate_buckets(t0, t1, month_bucket)


def current_bucket(bucket_fn: BucketFn, now_ms: Optional[int] = None) -> Bucket:
    """The still-forming bucket; it is never persisted."""
    if now_ms is None:
        now_ms = _to_ms(datetime.now(timezone.utc))
    return bucket_fn(now_ms)
