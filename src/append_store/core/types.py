"""Common type definitions for the append store.

Defines the index entry record and the primitive types shared by all components.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import NamedTuple

Key = str


class SegmentLocation(NamedTuple):
    """Byte range written to a data segment."""
    segment_id: int
    offset: int
    length: int


@dataclass
class IndexEntry:
    """Index record describing where a key's value lives on disk.

    ``index_offset`` is the position of this entry's frame in the index log.
    It is not persisted; replay stamps it onto every decoded entry.
    """

    key: Key
    segment_id: int
    data_offset: int
    data_length: int
    deleted: bool = False
    index_offset: int = -1

    @property
    def location(self) -> SegmentLocation:
        return SegmentLocation(self.segment_id, self.data_offset, self.data_length)

    def as_tombstone(self) -> IndexEntry:
        """Return a copy with the deleted flag set and every other field unchanged."""
        return replace(self, deleted=True)
