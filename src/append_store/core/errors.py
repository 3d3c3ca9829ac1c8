"""Exception hierarchy for the append store.

Defines all custom exceptions used throughout the implementation.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base exception for all append store errors."""
    pass


class ConfigurationError(StoreError, ValueError):
    """Raised when the store is configured with invalid parameters."""
    pass


class DuplicateKeyError(StoreError, ValueError):
    """Raised when appending a key that already maps to a live entry."""
    pass


class StoreIOError(StoreError, OSError):
    """Raised when an underlying file operation fails."""
    pass


class CorruptionError(StoreError):
    """Raised when on-disk data cannot be decoded or is structurally invalid."""
    pass


class ClosedStoreError(StoreError):
    """Raised when an operation is attempted on a closed store."""
    pass


class CompactionError(StoreError):
    """Raised when compaction fails and has been rolled back."""
    pass


class RecoveryError(StoreError):
    """Raised when an interrupted compaction cannot be resolved at startup."""
    pass
