"""Protocol definition for the data segment manager."""

from __future__ import annotations

from typing import Protocol

from ..core.types import SegmentLocation


class SegmentManager(Protocol):
    """Ordered list of append-only, size-bounded data files."""

    def append_bytes(self, payload: bytes) -> SegmentLocation:
        """Write payload to the end of the current segment.

        Invariants:
            - A payload never spans two segments
            - The current segment is rotated once its size exceeds the threshold
        """
        ...

    def read_bytes(self, segment_id: int, offset: int, length: int) -> bytes:
        """Read exactly length bytes at offset from the given segment."""
        ...

    def rotate(self) -> int:
        """Create the next segment file and make it current; return its id."""
        ...

    def close_segment(self, segment_id: int) -> None:
        """Close one segment's handle; later reads of it fail."""
        ...

    def __len__(self) -> int:
        """Number of segments."""
        ...

    def sync(self) -> None:
        """Force all segment data to disk (fsync)."""
        ...

    def close(self) -> None:
        """Close every segment and release resources."""
        ...
