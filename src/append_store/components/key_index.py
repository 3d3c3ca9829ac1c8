"""In-memory key index.

Uses sortedcontainers.SortedDict so live keys iterate in sorted order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sortedcontainers import SortedDict

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from ..core.types import IndexEntry, Key


class SimpleKeyIndex:
    """Mapping from live key to its index entry.

    Tracks ``capacity`` (every entry logged in the current generation,
    tombstones included) alongside the live entries themselves.

    Invariants:
        - Only non-deleted entries are held
        - len(index) <= capacity
    """

    def __init__(self):
        """Initialize empty index."""
        self._entries: SortedDict = SortedDict()
        self.capacity: int = 0

    def load(self, entries: Iterable[IndexEntry]) -> int:
        """Rebuild from replayed entries; return the number of frames seen."""
        self.clear()
        for entry in entries:
            self.capacity += 1
            if not entry.deleted:
                self._entries[entry.key] = entry
        return self.capacity

    def add(self, entry: IndexEntry) -> None:
        """Record a freshly logged entry."""
        self._entries[entry.key] = entry
        self.capacity += 1

    def restore(self, entry: IndexEntry) -> None:
        """Put back an entry popped by a removal that failed to persist."""
        self._entries[entry.key] = entry

    def get(self, key: Key) -> IndexEntry | None:
        return self._entries.get(key)

    def pop(self, key: Key) -> IndexEntry | None:
        return self._entries.pop(key, None)

    def keys(self) -> Iterator[Key]:
        """Iterate live keys in sorted order."""
        return iter(self._entries.keys())

    def load_ratio(self) -> float:
        """Return live entries / logged entries (1.0 for an empty log)."""
        if self.capacity == 0:
            return 1.0
        return len(self._entries) / self.capacity

    def clear(self) -> None:
        self._entries.clear()
        self.capacity = 0

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
