"""Index log implementation.

Append-only file of length-prefixed index entries, replayed at startup to
rebuild the in-memory index.
"""

from __future__ import annotations

import logging
import os
import struct
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from ..core.errors import ClosedStoreError, CorruptionError, StoreIOError
from ..core.types import IndexEntry

logger = logging.getLogger(__name__)

INDEX_EXT = ".ind"

# Frame format:
# [payload_len (4B)] [deleted (1B)] [segment_id (4B)] [data_offset (8B)] [data_length (4B)] [key_len (4B)] [key bytes]
# All integers are big-endian. Every field but the key is fixed width and the
# key is written once with its own length, so re-serializing an entry with a
# different deleted flag never changes the payload length.
FRAME_LEN = struct.Struct(">I")
ENTRY_HEADER = struct.Struct(">BIQII")


def index_path(directory: str | Path, prefix: str = "store", suffix: str = "") -> Path:
    """Return the path of the index log."""
    return Path(directory) / f"{prefix}{suffix}{INDEX_EXT}"


def encode_entry(entry: IndexEntry) -> bytes:
    """Serialize an entry payload (without the frame length prefix)."""
    key_bytes = entry.key.encode("utf-8")
    try:
        header = ENTRY_HEADER.pack(
            1 if entry.deleted else 0,
            entry.segment_id,
            entry.data_offset,
            entry.data_length,
            len(key_bytes),
        )
    except struct.error as e:
        raise ValueError(f"Index entry field out of range for key {entry.key!r}: {e}") from e
    return header + key_bytes


def decode_entry(payload: bytes, index_offset: int = -1) -> IndexEntry:
    """Deserialize an entry payload and stamp its index offset."""
    if len(payload) < ENTRY_HEADER.size:
        raise CorruptionError(
            f"Index frame at {index_offset} too short: {len(payload)} bytes"
        )
    deleted, segment_id, data_offset, data_length, key_len = ENTRY_HEADER.unpack_from(payload)
    if deleted not in (0, 1):
        raise CorruptionError(f"Invalid deleted flag {deleted} in frame at {index_offset}")
    if ENTRY_HEADER.size + key_len != len(payload):
        raise CorruptionError(
            f"Key length {key_len} does not match frame length {len(payload)} at {index_offset}"
        )
    try:
        key = payload[ENTRY_HEADER.size:].decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptionError(f"Undecodable key in frame at {index_offset}: {e}") from e

    return IndexEntry(
        key=key,
        segment_id=segment_id,
        data_offset=data_offset,
        data_length=data_length,
        deleted=bool(deleted),
        index_offset=index_offset,
    )


class SimpleIndexLog:
    """Append-only index log with in-place tombstone rewrites.

    Args:
        path: Path to the index file
        sync_writes: Whether to fsync after each append or rewrite
        repair_torn_tail: Truncate a partial final frame during replay instead of failing

    Invariants:
        - Frames are appended in order and never move
        - A tombstone rewrite replaces a payload with one of identical length
        - Replay yields entries in append order
    """

    def __init__(self, path: str | Path, sync_writes: bool = True, repair_torn_tail: bool = False):
        self.path = Path(path)
        self.sync_writes = sync_writes
        self.repair_torn_tail = repair_torn_tail
        self._fd: BinaryIO | None = None
        self._open()

    def _open(self) -> None:
        try:
            self.path.touch(exist_ok=True)
            self._fd = open(self.path, "r+b")
        except OSError as e:
            raise StoreIOError(f"Unable to open the index file '{self.path}': {e}") from e
        logger.debug(f"Opened index log {self.path} ({self.size_bytes()} bytes)")

    def _require_fd(self) -> BinaryIO:
        if self._fd is None:
            raise ClosedStoreError(f"Index log {self.path} is closed")
        return self._fd

    def _sync(self, fd: BinaryIO) -> None:
        fd.flush()
        if self.sync_writes:
            os.fsync(fd.fileno())

    def size_bytes(self) -> int:
        fd = self._require_fd()
        return fd.seek(0, os.SEEK_END)

    def append_entry(self, entry: IndexEntry) -> int:
        """Append a framed entry.

        Returns:
            Offset of the frame's length prefix
        """
        fd = self._require_fd()
        payload = encode_entry(entry)
        try:
            offset = fd.seek(0, os.SEEK_END)
        except OSError as e:
            raise StoreIOError(f"Failed to append index entry for {entry.key!r}: {e}") from e
        try:
            fd.write(FRAME_LEN.pack(len(payload)) + payload)
            self._sync(fd)
        except OSError as e:
            self._discard_partial_frame(fd, offset)
            raise StoreIOError(f"Failed to append index entry for {entry.key!r}: {e}") from e

        logger.debug(f"Appended index entry key={entry.key!r} at offset={offset}")
        return offset

    def _discard_partial_frame(self, fd: BinaryIO, offset: int) -> None:
        """Cut a failed append back to offset.

        If the truncate fails too, the log is closed so no frame is ever
        written after the partial one; it is then a torn tail on the next open.
        """
        try:
            fd.truncate(offset)
            fd.seek(offset)
        except OSError:
            logger.exception(f"Could not truncate partial index frame at {offset} in {self.path}")
            try:
                fd.close()
            except OSError:
                logger.exception(f"Failed to close index log {self.path}")
            self._fd = None

    def rewrite_tombstone(self, index_offset: int, entry: IndexEntry) -> None:
        """Overwrite the payload of the frame at index_offset with entry."""
        fd = self._require_fd()
        payload = encode_entry(entry)
        try:
            fd.seek(index_offset)
            length_bytes = fd.read(FRAME_LEN.size)
            if len(length_bytes) < FRAME_LEN.size:
                raise CorruptionError(f"No index frame at offset {index_offset}")
            (stored_len,) = FRAME_LEN.unpack(length_bytes)
            if stored_len != len(payload):
                raise CorruptionError(
                    f"Rewrite of {entry.key!r} at {index_offset} changes payload length "
                    f"from {stored_len} to {len(payload)}"
                )
            fd.seek(index_offset + FRAME_LEN.size)
            fd.write(payload)
            self._sync(fd)
        except OSError as e:
            raise StoreIOError(f"Failed to rewrite index entry at {index_offset}: {e}") from e

        logger.debug(f"Rewrote index entry key={entry.key!r} deleted={entry.deleted}")

    def replay(self) -> Iterator[IndexEntry]:
        """Iterate entries in append order, stamping each with its frame offset.

        Raises:
            CorruptionError: On a torn or undecodable frame (a torn final frame
                is truncated instead when repair_torn_tail is set)
        """
        self._require_fd().flush()
        try:
            f = open(self.path, "rb")
        except OSError as e:
            raise StoreIOError(f"Unable to read the index file '{self.path}': {e}") from e

        with f:
            while True:
                offset = f.tell()
                length_bytes = f.read(FRAME_LEN.size)
                if len(length_bytes) == 0:
                    break  # EOF
                if len(length_bytes) < FRAME_LEN.size:
                    self._torn_tail(offset, "partial length prefix")
                    break

                (length,) = FRAME_LEN.unpack(length_bytes)
                payload = f.read(length)
                if len(payload) < length:
                    self._torn_tail(
                        offset, f"length prefix {length} overruns end of file by {length - len(payload)} bytes"
                    )
                    break

                yield decode_entry(payload, offset)

    def _torn_tail(self, offset: int, reason: str) -> None:
        if not self.repair_torn_tail:
            raise CorruptionError(f"Torn index frame at offset {offset} in {self.path}: {reason}")
        logger.warning(f"Truncating torn index frame at offset {offset} in {self.path}: {reason}")
        self.truncate(offset)

    def truncate(self, size: int) -> None:
        """Cut the log down to size bytes."""
        fd = self._require_fd()
        try:
            fd.truncate(size)
            self._sync(fd)
        except OSError as e:
            raise StoreIOError(f"Failed to truncate index file '{self.path}': {e}") from e

    def sync(self) -> None:
        """Force data to disk (fsync)."""
        fd = self._require_fd()
        try:
            fd.flush()
            os.fsync(fd.fileno())
        except OSError as e:
            raise StoreIOError(f"Failed to sync index file '{self.path}': {e}") from e

    def close(self) -> None:
        """Close the log and release resources."""
        if self._fd:
            self._fd.close()
            self._fd = None
            logger.debug(f"Closed index log {self.path}")

    def destroy(self) -> None:
        """Close the log and delete its file."""
        self.close()
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreIOError(f"Failed to delete index file '{self.path}': {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
