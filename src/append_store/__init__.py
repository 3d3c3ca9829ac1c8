"""Append Store - persistent append-only key-value store over rotating data segments."""

from .core.config import StoreConfig
from .core.errors import (
    StoreError,
    ConfigurationError,
    DuplicateKeyError,
    StoreIOError,
    CorruptionError,
    ClosedStoreError,
    CompactionError,
    RecoveryError,
)
from .core.store import SimpleSegmentStore
from .core.thread_safe_store import ThreadSafeSegmentStore
from .core.types import Key, IndexEntry, SegmentLocation
from .components.codec import BytesCodec, JSONCodec, PickleCodec, VersionedCodec
from .interfaces.codec import Codec
from .interfaces.store import AppendableStore

__all__ = [
    "StoreConfig",
    "StoreError",
    "ConfigurationError",
    "DuplicateKeyError",
    "StoreIOError",
    "CorruptionError",
    "ClosedStoreError",
    "CompactionError",
    "RecoveryError",
    "SimpleSegmentStore",
    "ThreadSafeSegmentStore",
    "AppendableStore",
    "Codec",
    "BytesCodec",
    "JSONCodec",
    "PickleCodec",
    "VersionedCodec",
    "Key",
    "IndexEntry",
    "SegmentLocation",
]
