"""Value codecs.

The store never depends on a specific encoding; callers pass any object
implementing the Codec protocol.
"""

from __future__ import annotations

import json
import pickle
from typing import Any

from ..core.errors import CorruptionError
from ..interfaces.codec import Codec


class BytesCodec:
    """Identity codec for values that are already bytes."""

    def encode(self, value: Any) -> bytes:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"BytesCodec expects bytes, got {type(value).__name__}")
        return bytes(value)

    def decode(self, data: bytes) -> bytes:
        return bytes(data)


class JSONCodec:
    """UTF-8 JSON codec for plain data values."""

    def __init__(self, sort_keys: bool = True):
        self.sort_keys = sort_keys

    def encode(self, value: Any) -> bytes:
        return json.dumps(value, sort_keys=self.sort_keys, separators=(",", ":")).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


class PickleCodec:
    """Native Python object serialization.

    Only decode data written by a trusted process.
    """

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def encode(self, value: Any) -> bytes:
        return pickle.dumps(value, protocol=self.protocol)

    def decode(self, data: bytes) -> Any:
        return pickle.loads(data)


class VersionedCodec:
    """Wraps another codec and prefixes every payload with a format version byte.

    Args:
        inner: Codec producing the payload
        version: Format version (0-255) written on encode and required on decode
    """

    def __init__(self, inner: Codec, version: int = 1):
        if not 0 <= version <= 0xFF:
            raise ValueError(f"version must fit in one byte, got {version}")
        self.inner = inner
        self.version = version

    def encode(self, value: Any) -> bytes:
        return bytes((self.version,)) + self.inner.encode(value)

    def decode(self, data: bytes) -> Any:
        if not data:
            raise CorruptionError("Empty payload, missing codec version byte")
        if data[0] != self.version:
            raise CorruptionError(
                f"Unsupported codec version {data[0]}, expected {self.version}"
            )
        return self.inner.decode(data[1:])
