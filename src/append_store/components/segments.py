"""Data segment manager.

Owns the ordered list of append-only data files that hold encoded values.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import BinaryIO

from ..core.errors import ClosedStoreError, CorruptionError, StoreIOError
from ..core.types import SegmentLocation

logger = logging.getLogger(__name__)

DATA_EXT = ".dat"


def segment_path(directory: str | Path, ordinal: int, prefix: str = "store", suffix: str = "") -> Path:
    """Return the path of a data segment.

    Ordinals are zero-padded to 4 digits so names sort like numbers.
    """
    return Path(directory) / f"{prefix}_{ordinal:04d}{suffix}{DATA_EXT}"


def list_segment_ordinals(directory: str | Path, prefix: str = "store", suffix: str = "") -> list[int]:
    """Return the sorted ordinals of every segment file matching prefix and suffix."""
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d{{4,}}){re.escape(suffix)}{re.escape(DATA_EXT)}$")
    ordinals = []
    for name in os.listdir(directory):
        match = pattern.match(name)
        if match:
            ordinals.append(int(match.group(1)))
    return sorted(ordinals)


class SimpleSegmentManager:
    """Append-only data segments rotated at a size threshold.

    Args:
        directory: Directory holding the segment files
        prefix: File name prefix shared by every segment
        suffix: Distinguishing suffix (used for the compaction copy generation)
        max_bytes: Size after which the current segment is rotated
        sync_writes: Whether to fsync after each append

    Invariants:
        - Only the last segment receives appends
        - A payload is never split across segments
        - Segment ids are contiguous list positions starting at 0
    """

    def __init__(
        self,
        directory: str | Path,
        prefix: str = "store",
        suffix: str = "",
        max_bytes: int = 1 << 20,
        sync_writes: bool = True,
    ):
        self.directory = Path(directory)
        self.prefix = prefix
        self.suffix = suffix
        self.max_bytes = max_bytes
        self.sync_writes = sync_writes
        self._files: list[BinaryIO | None] = []
        self._closed = False
        self.discover()

    def _path(self, ordinal: int) -> Path:
        return segment_path(self.directory, ordinal, self.prefix, self.suffix)

    @property
    def paths(self) -> list[Path]:
        return [self._path(i) for i in range(len(self._files))]

    def __len__(self) -> int:
        return len(self._files)

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedStoreError("Segment manager is closed")

    def discover(self) -> list[Path]:
        """Open every existing segment in ordinal order, creating segment 0 if none exist."""
        try:
            ordinals = list_segment_ordinals(self.directory, self.prefix, self.suffix)
        except OSError as e:
            raise StoreIOError(f"Cannot list segments in {self.directory}: {e}") from e

        if ordinals != list(range(len(ordinals))):
            raise CorruptionError(
                f"Segment ordinals in {self.directory} are not contiguous: {ordinals}"
            )

        for ordinal in ordinals:
            self._files.append(self._open(self._path(ordinal)))

        if not self._files:
            self.rotate()

        logger.debug(f"Discovered {len(self._files)} segment(s) in {self.directory}")
        return self.paths

    def _open(self, path: Path) -> BinaryIO:
        try:
            return open(path, "a+b")
        except OSError as e:
            raise StoreIOError(f"Unable to open data segment '{path}': {e}") from e

    def rotate(self) -> int:
        """Create the next segment file and make it the append target."""
        self._check_open()
        ordinal = len(self._files)
        self._files.append(self._open(self._path(ordinal)))
        logger.debug(f"Rotated to segment {self._path(ordinal).name}")
        return ordinal

    def append_bytes(self, payload: bytes) -> SegmentLocation:
        """Write payload to the current segment, rotating afterwards if it grew too large."""
        self._check_open()
        segment_id = len(self._files) - 1
        fd = self._files[segment_id]
        if fd is None:
            raise StoreIOError(f"Segment {segment_id} is not open")

        try:
            offset = fd.seek(0, os.SEEK_END)
            fd.write(payload)
            fd.flush()
            if self.sync_writes:
                os.fsync(fd.fileno())
        except OSError as e:
            raise StoreIOError(f"Failed to append to segment {segment_id}: {e}") from e

        if offset + len(payload) > self.max_bytes:
            self.rotate()

        return SegmentLocation(segment_id, offset, len(payload))

    def read_bytes(self, segment_id: int, offset: int, length: int) -> bytes:
        """Read exactly length bytes at offset from segment_id."""
        self._check_open()
        if not 0 <= segment_id < len(self._files):
            raise StoreIOError(f"Segment {segment_id} does not exist")
        fd = self._files[segment_id]
        if fd is None:
            raise StoreIOError(f"Segment {segment_id} is not open")

        try:
            fd.seek(offset)
            data = fd.read(length)
        except (OSError, ValueError) as e:
            raise StoreIOError(f"Failed to read segment {segment_id} at {offset}: {e}") from e

        if len(data) != length:
            raise StoreIOError(
                f"Read past end of segment {segment_id}: wanted {length} bytes at {offset}, "
                f"got {len(data)}"
            )
        return data

    def close_segment(self, segment_id: int) -> None:
        """Release the handle of one segment; later reads from it fail."""
        fd = self._files[segment_id]
        if fd is not None:
            fd.close()
            self._files[segment_id] = None

    def sync(self) -> None:
        """Force every open segment to disk (fsync)."""
        self._check_open()
        try:
            for fd in self._files:
                if fd is not None:
                    fd.flush()
                    os.fsync(fd.fileno())
        except OSError as e:
            raise StoreIOError(f"Failed to sync segments: {e}") from e

    def close(self) -> None:
        """Close every segment and release resources."""
        if self._closed:
            return
        for segment_id in range(len(self._files)):
            self.close_segment(segment_id)
        self._closed = True
        logger.debug(f"Closed segments in {self.directory}")

    def destroy(self) -> None:
        """Close this generation and delete its files."""
        paths = self.paths
        self.close()
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StoreIOError(f"Failed to delete segment '{path}': {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
