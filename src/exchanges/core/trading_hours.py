"""
Trading session calendar parsed from venue metadata.

Accepted formats (venue local time zone):
    20240325:0930-20240325:1600;20240326:CLOSED
    20090507:0700-1830,1830-2330;20090508:CLOSED
"""

import time
from datetime import datetime
from typing import List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

Interval = Tuple[int, int]


def _to_ms(date_part: str, hhmm: str, tz: ZoneInfo) -> int:
    dt = datetime.strptime(f"{date_part}{hhmm}", "%Y%m%d%H%M").replace(tzinfo=tz)
    return int(dt.timestamp() * 1000)


class TradingHours:
    """
    Sorted (open_ms, close_ms) intervals; `is_open` uses strict inequalities.

    An instance built with intervals=None is always open (venues without
    sessions).
    """

    __slots__ = ('intervals', 'time_zone')

    def __init__(self, intervals: Optional[List[Interval]] = None, time_zone: Optional[str] = None):
        self.intervals = sorted(intervals) if intervals is not None else None
        self.time_zone = time_zone

    @classmethod
    def always_open(cls) -> 'TradingHours':
        return cls(None)

    @classmethod
    def parse(cls, raw: Optional[str], tz: Optional[str] = None) -> 'TradingHours':
        """
        Parse a session string.

        Raises:
            ValueError: On a malformed day or interval entry
        """
        if not raw:
            return cls.always_open()

        zone = ZoneInfo(tz or "UTC")
        intervals: List[Interval] = []
        for day in filter(None, (part.strip() for part in raw.split(';'))):
            if day.endswith(':CLOSED'):
                continue
            date_part, _, ranges = day.partition(':')
            if not ranges:
                raise ValueError(f"Malformed trading hours entry {day!r}")
            for span in filter(None, ranges.split(',')):
                start, sep, end = span.partition('-')
                if not sep:
                    raise ValueError(f"Malformed trading hours range {span!r}")
                # "0930" keeps the entry date; "20240325:1600" carries its own
                if ':' in start:
                    start_date, start = start.split(':', 1)
                else:
                    start_date = date_part
                if ':' in end:
                    end_date, end = end.split(':', 1)
                else:
                    end_date = start_date
                intervals.append((_to_ms(start_date, start, zone), _to_ms(end_date, end, zone)))
        return cls(intervals, tz)

    def is_open(self, now: Union[int, float, datetime, None] = None) -> bool:
        """`now` as epoch ms, aware datetime, or None for the current time."""
        if self.intervals is None:
            return True
        if now is None:
            now_ms = int(time.time() * 1000)
        elif isinstance(now, datetime):
            now_ms = int(now.timestamp() * 1000)
        else:
            now_ms = int(now)
        return any(open_ms < now_ms < close_ms for open_ms, close_ms in self.intervals)

    def next_open(self, now_ms: int) -> Optional[int]:
        if self.intervals is None:
            return now_ms
        for open_ms, close_ms in self.intervals:
            if now_ms < close_ms:
                return max(open_ms, now_ms)
        return None

    def __repr__(self) -> str:
        if self.intervals is None:
            return "TradingHours(always open)"
        return f"TradingHours({len(self.intervals)} sessions, tz={self.time_zone})"
