"""Configuration for the append store.

Defines all tunable parameters for the segment storage engine.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ConfigurationError

DEFAULT_LOAD_FACTOR = 0.75
DEFAULT_SEGMENT_MAX_BYTES = 1 << 20  # 1 MiB

# File naming
FILE_PREFIX = "store"
COPY_SUFFIX = "_copy"
MANIFEST_EXT = ".manifest"


@dataclass
class StoreConfig:
    """Configuration parameters for the append store.

    Attributes:
        data_dir: Root directory for index and data files (must already exist)
        load_factor: Minimum live/total entry ratio before compaction runs
        segment_max_bytes: Size after which the current data segment is rotated
        sync_writes: Whether to fsync data and index files after each write
        repair_torn_tail: Truncate a partial final index frame instead of failing
    """

    data_dir: str
    load_factor: float = DEFAULT_LOAD_FACTOR
    segment_max_bytes: int = DEFAULT_SEGMENT_MAX_BYTES
    sync_writes: bool = True
    repair_torn_tail: bool = False

    def __post_init__(self) -> None:
        if not self.data_dir or not str(self.data_dir).strip():
            raise ConfigurationError("data_dir cannot be empty")
        if not self.load_factor > 0:
            raise ConfigurationError(f"load_factor must be positive, got {self.load_factor}")
        if self.segment_max_bytes <= 0:
            raise ConfigurationError(
                f"segment_max_bytes must be positive, got {self.segment_max_bytes}"
            )
