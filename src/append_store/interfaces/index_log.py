"""Protocol definition for the index log."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol

from ..core.types import IndexEntry


class IndexLog(Protocol):
    """Append-only file of framed index entries."""

    def append_entry(self, entry: IndexEntry) -> int:
        """Append a framed entry and return the offset of its length prefix."""
        ...

    def rewrite_tombstone(self, index_offset: int, entry: IndexEntry) -> None:
        """Overwrite the payload of the frame at index_offset in place.

        Invariants:
            - The new payload has exactly the stored payload's length
        """
        ...

    def replay(self) -> Iterator[IndexEntry]:
        """Iterate every frame from the start of the file in append order."""
        ...

    def sync(self) -> None:
        """Force data to disk (fsync)."""
        ...

    def close(self) -> None:
        """Close the log and release resources."""
        ...
