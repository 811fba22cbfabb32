from collections import deque
from typing import Generic, List, TypeVar

T = TypeVar('T')


class RingBuffer(Generic[T]):
    """
    Bounded FIFO for the logging pipeline.

    Single producer (log calls) and single consumer (dispatch task) on one
    event loop, so no locking is needed. Items offered while full are dropped
    and counted.
    """

    def __init__(self, maxsize: int = 10000):
        self.maxsize = maxsize
        self._buffer: deque = deque()
        self._dropped_count = 0

    def put_nowait(self, item: T) -> bool:
        """Append item; returns False (and counts a drop) when the buffer is full."""
        if len(self._buffer) >= self.maxsize:
            self._dropped_count += 1
            return False
        self._buffer.append(item)
        return True

    def get_batch(self, batch_size: int = 100) -> List[T]:
        """Pop up to batch_size items in arrival order."""
        count = min(batch_size, len(self._buffer))
        return [self._buffer.popleft() for _ in range(count)]

    def size(self) -> int:
        return len(self._buffer)

    def dropped_count(self) -> int:
        return self._dropped_count
