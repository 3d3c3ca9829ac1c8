"""Append store implementation - main public API.

Orchestrates the index log, data segments, in-memory index and compaction.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..components.codec import PickleCodec
from ..components.compaction import SimpleRelocator
from ..components.key_index import SimpleKeyIndex
from ..components.manifest import SimpleManifest
from ..interfaces.codec import Codec
from ..interfaces.index_log import IndexLog
from ..interfaces.segments import SegmentManager
from .config import DEFAULT_LOAD_FACTOR, FILE_PREFIX, MANIFEST_EXT, StoreConfig
from .errors import (
    ClosedStoreError,
    CompactionError,
    CorruptionError,
    DuplicateKeyError,
    StoreIOError,
)
from .types import IndexEntry, Key

logger = logging.getLogger(__name__)

MAX_VALUE_BYTES = 0xFFFFFFFF
MAX_KEY_BYTES = 0xFFFFFFFF


class SimpleSegmentStore:
    """Persistent append-only key-value store over an index log and data segments.

    Args:
        config: Store configuration
        codec: Value codec (defaults to PickleCodec)

    Public API:
        - append(key, value): Store a value under a new key
        - get(key, default=None): Retrieve a value, or default
        - remove(key): Tombstone a key, compacting when the load factor drops
        - generate_key(): Random UUID-v4 key
        - compact(): Manual compaction
        - close(): Release every file handle

    Invariants:
        - Data bytes are written before the index frame, and the in-memory
          index is only updated after both succeed
        - The in-memory index never holds a key whose tombstone is on disk
        - len(store) <= store.capacity; equal right after compaction

    Not thread-safe; see ThreadSafeSegmentStore.
    """

    def __init__(self, config: StoreConfig, codec: Codec | None = None):
        self.config = config
        self.data_dir = Path(config.data_dir)
        if not self.data_dir.is_dir():
            raise StoreIOError(f"Store directory does not exist: {self.data_dir}")

        self.codec: Codec = codec if codec is not None else PickleCodec()
        self._closed = False
        self._index = SimpleKeyIndex()
        self._index_log: IndexLog | None = None
        self._segments: SegmentManager | None = None

        manifest = SimpleManifest(self.data_dir / f"{FILE_PREFIX}{MANIFEST_EXT}")
        self._relocator = SimpleRelocator(config, manifest, FILE_PREFIX)
        self._relocator.recover()

        self._index_log, self._segments = self._relocator.open_generation()
        try:
            self._recover()
        except Exception:
            self._close_handles()
            raise

        logger.info(
            f"Opened store at {self.data_dir}: {len(self._index)} live / "
            f"{self._index.capacity} logged entries in {len(self._segments)} segment(s)"
        )

    @classmethod
    def open(
        cls,
        directory: str | Path,
        load_factor: float = DEFAULT_LOAD_FACTOR,
        codec: Codec | None = None,
        **options: Any,
    ) -> SimpleSegmentStore:
        """Open a store in an existing directory.

        Extra keyword options are passed through to StoreConfig.
        """
        config = StoreConfig(data_dir=str(directory), load_factor=load_factor, **options)
        return cls(config, codec)

    def _recover(self) -> None:
        """Rebuild the in-memory index by replaying the index log."""
        logger.info("Replaying index log...")
        count = self._index.load(self._validated(self._index_log.replay()))
        logger.info(f"Replayed {count} index entries, {len(self._index)} live")

    def _validated(self, entries: Iterator[IndexEntry]) -> Iterator[IndexEntry]:
        seen: set[Key] = set()
        segment_count = len(self._segments)
        for entry in entries:
            if not entry.deleted:
                if entry.key in seen:
                    raise CorruptionError(f"Duplicate live key {entry.key!r} in index log")
                if entry.segment_id >= segment_count:
                    raise CorruptionError(
                        f"Entry {entry.key!r} refers to missing segment {entry.segment_id}"
                    )
                seen.add(entry.key)
            yield entry

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedStoreError("Store is closed")

    @property
    def load_factor(self) -> float:
        return self.config.load_factor

    @property
    def size(self) -> int:
        """Number of live entries."""
        self._check_open()
        return len(self._index)

    @property
    def capacity(self) -> int:
        """Number of entries logged in the current generation, tombstones included."""
        self._check_open()
        return self._index.capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, key: Key, value: Any) -> None:
        """Store value under key.

        Raises:
            DuplicateKeyError: If key is already live
            TypeError: If key is not a str
            ValueError: If key is not encodable as UTF-8, or key or value is too large
        """
        self._check_open()
        if not isinstance(key, str):
            raise TypeError(f"Keys must be str, got {type(key).__name__}")
        try:
            key_length = len(key.encode("utf-8"))
        except UnicodeEncodeError as e:
            raise ValueError(f"Key {key!r} is not encodable as UTF-8: {e}") from e
        if key_length > MAX_KEY_BYTES:
            raise ValueError(f"Key {key!r} exceeds {MAX_KEY_BYTES} bytes")
        if key in self._index:
            raise DuplicateKeyError(f"Key {key!r} already exists")

        payload = self.codec.encode(value)
        if len(payload) > MAX_VALUE_BYTES:
            raise ValueError(f"Encoded value for {key!r} exceeds {MAX_VALUE_BYTES} bytes")

        location = self._segments.append_bytes(payload)
        entry = IndexEntry(
            key=key,
            segment_id=location.segment_id,
            data_offset=location.offset,
            data_length=location.length,
        )
        entry.index_offset = self._index_log.append_entry(entry)

        self._index.add(entry)

    def get(self, key: Key, default: Any = None) -> Any:
        """Retrieve the value for key, or default if it is not live.

        A stored None reads back as None, so pass a sentinel default to tell
        it apart from a missing key.
        """
        self._check_open()
        entry = self._index.get(key)
        if entry is None:
            return default

        data = self._segments.read_bytes(*entry.location)
        try:
            return self.codec.decode(data)
        except CorruptionError:
            raise
        except Exception as e:
            raise CorruptionError(f"Failed to decode value for {key!r}: {e}") from e

    def remove(self, key: Key) -> bool:
        """Tombstone key.

        Returns:
            True if the key was live, False otherwise

        Raises:
            CompactionError: If the compaction triggered by this removal failed
                (the removal itself is durable)
        """
        self._check_open()
        entry = self._index.pop(key)
        if entry is None:
            return False

        try:
            self._index_log.rewrite_tombstone(entry.index_offset, entry.as_tombstone())
        except Exception:
            self._index.restore(entry)
            raise

        logger.debug(f"Removed key={key!r}, load ratio {self._index.load_ratio():.2f}")
        if self._index.load_ratio() < self.config.load_factor:
            self._compact()
        return True

    def generate_key(self) -> Key:
        """Return a random UUID-v4 string."""
        self._check_open()
        return str(uuid.uuid4())

    def keys(self) -> list[Key]:
        """Return live keys in sorted order."""
        self._check_open()
        return list(self._index.keys())

    def compact(self) -> None:
        """Trigger synchronous compaction regardless of the load ratio."""
        self._check_open()
        self._compact()

    def _compact(self) -> None:
        try:
            self._index_log, self._segments, self._index = self._relocator.relocate(
                self._index_log, self._segments
            )
        except CompactionError:
            # Old generation is untouched on disk; reopen its handles
            self._close_handles()
            try:
                self._index_log, self._segments = self._relocator.open_generation()
            except Exception:
                self._closed = True
                raise
            raise
        except Exception:
            self._close_handles()
            self._closed = True
            raise

    def sync(self) -> None:
        """Force index and data files to disk (fsync)."""
        self._check_open()
        self._segments.sync()
        self._index_log.sync()

    def _close_handles(self) -> None:
        try:
            if self._index_log is not None:
                self._index_log.close()
        finally:
            if self._segments is not None:
                self._segments.close()

    def close(self) -> None:
        """Close store and release resources."""
        if self._closed:
            return
        self._closed = True
        self._close_handles()
        logger.info(f"Closed store at {self.data_dir}")

    def __contains__(self, key: object) -> bool:
        self._check_open()
        return key in self._index

    def __len__(self) -> int:
        return self.size

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
