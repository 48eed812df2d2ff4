"""
Fixed-capacity ring buffer.

Overwrites the oldest element when full. Used as the sliding window
behind the volatility and intensity estimators.
"""

from collections import deque
from typing import Deque, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """
    FIFO buffer with overwrite-on-full semantics.

    Usage:
        buf = RingBuffer(3)
        for x in (1, 2, 3, 4):
            buf.push(x)
        buf.to_list()  # [2, 3, 4]
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        self._capacity = int(capacity)
        self._items: Deque[T] = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, item: T) -> None:
        """Append item, evicting the oldest element if the buffer is full."""
        self._items.append(item)

    def pop(self) -> Optional[T]:
        """Remove and return the oldest element (None if empty)."""
        if not self._items:
            return None
        return self._items.popleft()

    def peek(self) -> Optional[T]:
        """Oldest element without removing it."""
        return self._items[0] if self._items else None

    def peek_back(self) -> Optional[T]:
        """Newest element without removing it."""
        return self._items[-1] if self._items else None

    def get(self, index: int) -> Optional[T]:
        """Element at index counted from the oldest (0)."""
        if index < 0 or index >= len(self._items):
            return None
        return self._items[index]

    def get_recent(self, offset: int = 0) -> Optional[T]:
        """Element counted back from the newest (0 = newest)."""
        if offset < 0 or offset >= len(self._items):
            return None
        return self._items[-1 - offset]

    def to_list(self) -> List[T]:
        """Snapshot of the contents, oldest first."""
        return list(self._items)

    def size(self) -> int:
        return len(self._items)

    def is_full(self) -> bool:
        return len(self._items) == self._capacity

    def is_empty(self) -> bool:
        return not self._items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.to_list())

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self._capacity}, items={self.to_list()!r})"
