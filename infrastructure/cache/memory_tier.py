from collections import OrderedDict
from collections.abc import Iterator

from domain.models.rates import CacheEntry


class MemoryTier:
    """In-process LRU keyed by storage key. Not thread-safe; callers serialise writes."""

    def __init__(self, capacity: int = 256):
        if capacity < 1:
            raise ValueError('capacity must be at least 1')
        self.capacity = capacity
        self._data: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str) -> CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        self._data.move_to_end(key, last=True)
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Lookup that does not touch recency."""
        return self._data.get(key)

    def set(self, key: str, entry: CacheEntry) -> list[str]:
        self._data[key] = entry
        self._data.move_to_end(key, last=True)
        evicted = []
        while len(self._data) > self.capacity:
            evicted_key, _ = self._data.popitem(last=False)
            evicted.append(evicted_key)
        return evicted

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> Iterator[tuple[str, CacheEntry]]:
        return iter(list(self._data.items()))
