"""Protocol definition for value codecs."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Codec(Protocol):
    """Turns a value into bytes and back."""

    def encode(self, value: Any) -> bytes:
        """Serialize value to bytes."""
        ...

    def decode(self, data: bytes) -> Any:
        """Deserialize bytes produced by encode()."""
        ...
