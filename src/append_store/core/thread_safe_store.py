"""Thread-safe append store.

Extends SimpleSegmentStore so that every public operation, including the
compaction a removal may trigger, runs under one re-entrant lock.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..interfaces.codec import Codec
    from .config import StoreConfig
    from .types import Key

from .store import SimpleSegmentStore

logger = logging.getLogger(__name__)


class ThreadSafeSegmentStore(SimpleSegmentStore):
    """SimpleSegmentStore serialized with a threading.RLock.

    Compaction is stop-the-world: it runs inside remove() or compact() while
    the lock is held, so no other operation can interleave with it.
    """

    def __init__(self, config: StoreConfig, codec: Codec | None = None):
        self._lock = threading.RLock()
        with self._lock:
            super().__init__(config, codec)
        logger.debug("Initialized ThreadSafeSegmentStore")

    def append(self, key: Key, value: Any) -> None:
        with self._lock:
            super().append(key, value)

    def get(self, key: Key, default: Any = None) -> Any:
        with self._lock:
            return super().get(key, default)

    def remove(self, key: Key) -> bool:
        with self._lock:
            return super().remove(key)

    def generate_key(self) -> Key:
        with self._lock:
            return super().generate_key()

    def keys(self) -> list[Key]:
        with self._lock:
            return super().keys()

    def compact(self) -> None:
        with self._lock:
            super().compact()

    def sync(self) -> None:
        with self._lock:
            super().sync()

    def close(self) -> None:
        with self._lock:
            super().close()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return super().__contains__(key)

    @property
    def size(self) -> int:
        with self._lock:
            return super().size

    @property
    def capacity(self) -> int:
        with self._lock:
            return super().capacity
