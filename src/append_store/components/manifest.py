"""Compaction manifest implementation.

Records compaction progress in a small JSON document updated atomically, so an
interrupted compaction can be rolled back or forward on the next open.
"""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path

from ..core.errors import RecoveryError, StoreIOError

logger = logging.getLogger(__name__)


class CompactionState(Enum):
    """Progress of the most recent compaction."""

    STABLE = "stable"
    COMPACTING = "compacting"
    COMMITTED = "committed"


class SimpleManifest:
    """Atomic record of which file generation is authoritative.

    Args:
        manifest_path: Path to manifest JSON file

    Invariants:
        - Updates are atomic via write-temp-then-rename
        - A missing file reads as STABLE
        - segment_count is only meaningful in the COMMITTED state
    """

    def __init__(self, manifest_path: str | Path):
        self.manifest_path = Path(manifest_path)
        self.state: CompactionState = CompactionState.STABLE
        self.segment_count: int = 0
        self._load()

    def _load(self) -> None:
        """Load manifest from disk."""
        if not self.manifest_path.exists():
            logger.debug(f"No manifest at {self.manifest_path}, assuming stable")
            return

        try:
            with open(self.manifest_path) as f:
                data = json.load(f)
            self.state = CompactionState(data["state"])
            self.segment_count = int(data.get("segment_count", 0))
        except OSError as e:
            raise StoreIOError(f"Failed to read manifest {self.manifest_path}: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise RecoveryError(f"Unreadable manifest {self.manifest_path}: {e}") from e
        logger.info(f"Loaded manifest from {self.manifest_path}: state={self.state.value}")

    def _save(self) -> None:
        """Save manifest to disk atomically."""
        temp_path = self.manifest_path.with_suffix(".tmp")
        data = {"state": self.state.value, "segment_count": self.segment_count}
        try:
            with open(temp_path, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, self.manifest_path)
        except OSError as e:
            raise StoreIOError(f"Failed to write manifest {self.manifest_path}: {e}") from e
        logger.debug(f"Saved manifest {data} to {self.manifest_path}")

    def mark_compacting(self) -> None:
        self.state = CompactionState.COMPACTING
        self.segment_count = 0
        self._save()

    def mark_committed(self, segment_count: int) -> None:
        """Declare the copy generation complete; this is the compaction commit point."""
        self.state = CompactionState.COMMITTED
        self.segment_count = segment_count
        self._save()

    def mark_stable(self) -> None:
        self.state = CompactionState.STABLE
        self.segment_count = 0
        self._save()
