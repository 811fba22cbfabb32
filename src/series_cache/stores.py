"""
On-disk chunk stores.

Layout under the cache root:

    <root>/<venue>/klines/<kind>/<instrument>/<bar>/<YYYY-MM-DD>.kline
    <root>/<venue>/fundingfees/<instrument>/<YYYY-MM>.json

Kline chunks are packed fixed-width little-endian records (one int64 open
time plus six float64 fields). Funding chunks are a plain JSON array.
Chunks are written once, through a temporary file renamed into place, and
never rewritten.
"""

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Generic, List, Optional, TypeVar

import aiofiles
import aiofiles.os
import msgspec
import numpy as np

from exchanges.structs import FundingRate, Kline
from infrastructure.logging import HFTLoggerInterface, get_logger
from .buckets import Bucket

T = TypeVar('T')

KLINE_DTYPE = np.dtype([
    ('open_time', '<i8'),
    ('open', '<f8'),
    ('high', '<f8'),
    ('low', '<f8'),
    ('close', '<f8'),
    ('volume', '<f8'),
    ('quote_volume', '<f8'),
])


class ChunkStore(ABC, Generic[T]):

    def __init__(self, root: str, venue: str, logger: Optional[HFTLoggerInterface] = None):
        self.root = Path(root)
        self.venue = venue
        self.logger = logger or get_logger('series_cache.store')

    @abstractmethod
    def encode(self, points: List[T]) -> bytes:
        pass

    @abstractmethod
    def decode(self, data: bytes) -> List[T]:
        pass

    async def exists(self, path: Path) -> bool:
        return await aiofiles.os.path.exists(path)

    async def read(self, path: Path) -> Optional[List[T]]:
        """Points of one chunk, or None when it is missing or unreadable."""
        if not await self.exists(path):
            return None
        async with aiofiles.open(path, 'rb') as f:
            data = await f.read()
        try:
            return self.decode(data)
        except (ValueError, msgspec.DecodeError, msgspec.ValidationError) as e:
            self.logger.warning(f"Ignoring unreadable chunk {path}: {e}")
            return None

    async def write(self, path: Path, points: List[T]) -> bool:
        if not points or await self.exists(path):
            return False
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        async with aiofiles.open(tmp_path, 'wb') as f:
            await f.write(self.encode(points))
        await aiofiles.os.replace(tmp_path, path)
        return True


class KlineChunkStore(ChunkStore[Kline]):

    def path(self, kind: str, instrument: str, bar: str, bucket: Bucket) -> Path:
        return self.root / self.venue / 'klines' / kind / instrument / bar / f"{bucket.label}.kline"

    def encode(self, points: List[Kline]) -> bytes:
        records = np.array(
            [(k.open_time, k.open, k.high, k.low, k.close, k.volume, k.quote_volume) for k in points],
            dtype=KLINE_DTYPE,
        )
        return records.tobytes()

    def decode(self, data: bytes) -> List[Kline]:
        if len(data) % KLINE_DTYPE.itemsize:
            raise ValueError(f"size {len(data)} is not a multiple of {KLINE_DTYPE.itemsize}")
        records = np.frombuffer(data, dtype=KLINE_DTYPE)
        return [
            Kline(
                open_time=int(r['open_time']),
                open=float(r['open']),
                high=float(r['high']),
                low=float(r['low']),
                close=float(r['close']),
                volume=float(r['volume']),
                quote_volume=float(r['quote_volume']),
            )
            for r in records
        ]

    async def load(self, kind: str, instrument: str, bar: str, bucket: Bucket) -> Optional[List[Kline]]:
        return await self.read(self.path(kind, instrument, bar, bucket))

    async def save(self, kind: str, instrument: str, bar: str, bucket: Bucket, klines: List[Kline]) -> bool:
        return await self.write(self.path(kind, instrument, bar, bucket), klines)


class FundingChunkStore(ChunkStore[FundingRate]):

    def __init__(self, root: str, venue: str, logger: Optional[HFTLoggerInterface] = None):
        super().__init__(root, venue, logger)
        self._decoder = msgspec.json.Decoder(List[FundingRate])

    def path(self, instrument: str, bucket: Bucket) -> Path:
        return self.root / self.venue / 'fundingfees' / instrument / f"{bucket.label}.json"

    def encode(self, points: List[FundingRate]) -> bytes:
        return msgspec.json.encode(points)

    def decode(self, data: bytes) -> List[FundingRate]:
        return self._decoder.decode(data)

    async def load(self, instrument: str, bucket: Bucket) -> Optional[List[FundingRate]]:
        return await self.read(self.path(instrument, bucket))

    async def save(self, instrument: str, bucket: Bucket, rates: List[FundingRate]) -> bool:
        return await self.write(self.path(instrument, bucket), rates)
