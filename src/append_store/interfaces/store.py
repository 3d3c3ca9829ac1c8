"""Protocol definition for the append store."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from ..core.types import Key


@runtime_checkable
class AppendableStore(Protocol):
    """Public API for an append-only key-value store."""

    def append(self, key: Key, value: Any) -> None:
        """Store value under a key that is not currently live."""
        ...

    def get(self, key: Key, default: Any = None) -> Any:
        """Return the value for key or default if not present."""
        ...

    def remove(self, key: Key) -> bool:
        """Tombstone key; return False if it was not present."""
        ...

    def generate_key(self) -> Key:
        """Return a fresh, collision-improbable key."""
        ...

    def close(self) -> None:
        """Release every file handle held by the store."""
        ...
