"""Compaction (relocation) implementation.

Rewrites every live entry into a fresh index log and segment generation,
discarding tombstones, and swaps the new generation in through the manifest.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.config import COPY_SUFFIX, FILE_PREFIX
from ..core.errors import CompactionError, CorruptionError, RecoveryError, StoreIOError
from ..core.types import IndexEntry
from .index_log import SimpleIndexLog, index_path
from .key_index import SimpleKeyIndex
from .manifest import CompactionState
from .segments import SimpleSegmentManager, list_segment_ordinals, segment_path

if TYPE_CHECKING:
    from ..core.config import StoreConfig
    from ..interfaces.index_log import IndexLog
    from ..interfaces.segments import SegmentManager
    from .manifest import SimpleManifest

logger = logging.getLogger(__name__)


class SimpleRelocator:
    """Whole-store compaction guarded by a manifest.

    Args:
        config: Store configuration
        manifest: Manifest recording compaction progress
        prefix: File name prefix of the store's files

    Invariants:
        - Old files are only deleted after the manifest records the commit
        - A failure before the commit leaves the old generation intact
        - The swap after the commit is idempotent and can be re-run at startup
    """

    def __init__(self, config: StoreConfig, manifest: SimpleManifest, prefix: str = FILE_PREFIX):
        self.config: StoreConfig = config
        self.data_dir: Path = Path(config.data_dir)
        self.manifest = manifest
        self.prefix = prefix

    def _copy_index_path(self) -> Path:
        return index_path(self.data_dir, self.prefix, COPY_SUFFIX)

    def _copy_ordinals(self) -> list[int]:
        return list_segment_ordinals(self.data_dir, self.prefix, COPY_SUFFIX)

    def relocate(
        self, index_log: IndexLog, segments: SegmentManager
    ) -> tuple[SimpleIndexLog, SimpleSegmentManager, SimpleKeyIndex]:
        """Compact the store into a new generation.

        The old index log and segments are consumed (closed) on success. On a
        CompactionError they may be partially closed but their files are intact.

        Returns:
            Live index log, segments and key index of the new generation

        Raises:
            CompactionError: Failure before the commit point, rolled back
            RecoveryError: Failure after the commit point, resolved on next open
        """
        started_at = time.time()
        logger.info(f"Compacting store in {self.data_dir}")

        new_log: SimpleIndexLog | None = None
        new_segments: SimpleSegmentManager | None = None
        try:
            self.discard_copies()
            self.manifest.mark_compacting()

            new_log = SimpleIndexLog(self._copy_index_path(), sync_writes=False)
            new_segments = SimpleSegmentManager(
                self.data_dir,
                prefix=self.prefix,
                suffix=COPY_SUFFIX,
                max_bytes=self.config.segment_max_bytes,
                sync_writes=False,
            )
            new_index = self._copy_live_entries(index_log, segments, new_log, new_segments)

            new_segments.sync()
            new_log.sync()
            segment_count = len(new_segments)
            new_log.close()
            new_segments.close()
        except Exception as e:
            logger.exception("Compaction failed before commit, rolling back")
            self._rollback(new_log, new_segments)
            raise CompactionError(f"Compaction of {self.data_dir} failed: {e}") from e

        try:
            self.manifest.mark_committed(segment_count)
            self.finalize_swap(segment_count)
            self.manifest.mark_stable()

            live_log, live_segments = self.open_generation()
        except Exception as e:
            logger.exception("Compaction failed after commit")
            raise RecoveryError(
                f"Compaction of {self.data_dir} committed but the file swap failed; "
                f"reopen the store to finish it: {e}"
            ) from e

        logger.info(
            f"Compacted {new_index.capacity} live entries into {segment_count} segment(s) "
            f"in {time.time() - started_at:.2f}s"
        )
        return live_log, live_segments, new_index

    def _copy_live_entries(
        self,
        index_log: IndexLog,
        segments: SegmentManager,
        new_log: SimpleIndexLog,
        new_segments: SimpleSegmentManager,
    ) -> SimpleKeyIndex:
        """Replay the old log and re-append every live entry to the copy generation."""
        new_index = SimpleKeyIndex()
        prev_segment = 0

        for entry in index_log.replay():
            if entry.segment_id < prev_segment:
                raise CorruptionError(
                    f"Index entry {entry.key!r} refers to segment {entry.segment_id} "
                    f"after segment {prev_segment}"
                )
            # Segments are visited in order; earlier ones are fully superseded
            for superseded in range(prev_segment, entry.segment_id):
                segments.close_segment(superseded)
            prev_segment = entry.segment_id

            if entry.deleted:
                continue

            data = segments.read_bytes(*entry.location)
            location = new_segments.append_bytes(data)
            new_entry = IndexEntry(
                key=entry.key,
                segment_id=location.segment_id,
                data_offset=location.offset,
                data_length=location.length,
            )
            new_entry.index_offset = new_log.append_entry(new_entry)
            new_index.add(new_entry)

        segments.close()
        index_log.close()
        return new_index

    def _rollback(
        self, new_log: SimpleIndexLog | None, new_segments: SimpleSegmentManager | None
    ) -> None:
        try:
            if new_log is not None:
                new_log.destroy()
            if new_segments is not None:
                new_segments.destroy()
            self.discard_copies()
            self.manifest.mark_stable()
        except Exception:
            # The manifest still says COMPACTING; the next open discards the copies
            logger.exception("Rollback of failed compaction incomplete")

    def finalize_swap(self, segment_count: int) -> None:
        """Move the committed copy generation onto the canonical file names.

        Safe to re-run after a crash at any point of a previous run.
        """
        try:
            for ordinal in range(segment_count):
                src = segment_path(self.data_dir, ordinal, self.prefix, COPY_SUFFIX)
                dst = segment_path(self.data_dir, ordinal, self.prefix)
                if src.exists():
                    os.replace(src, dst)
                elif not dst.exists():
                    raise RecoveryError(f"Committed segment {src.name} is missing")

            for ordinal in list_segment_ordinals(self.data_dir, self.prefix):
                if ordinal >= segment_count:
                    segment_path(self.data_dir, ordinal, self.prefix).unlink()

            copy_index = self._copy_index_path()
            if copy_index.exists():
                os.replace(copy_index, index_path(self.data_dir, self.prefix))
        except OSError as e:
            raise StoreIOError(f"Failed to swap in compacted files: {e}") from e

    def discard_copies(self) -> None:
        """Delete every file of an uncommitted copy generation."""
        try:
            self._copy_index_path().unlink(missing_ok=True)
            for ordinal in self._copy_ordinals():
                segment_path(self.data_dir, ordinal, self.prefix, COPY_SUFFIX).unlink()
        except OSError as e:
            raise StoreIOError(f"Failed to delete compaction copy files: {e}") from e

    def open_generation(self) -> tuple[SimpleIndexLog, SimpleSegmentManager]:
        """Open the canonical index log and segments."""
        index_log = SimpleIndexLog(
            index_path(self.data_dir, self.prefix),
            sync_writes=self.config.sync_writes,
            repair_torn_tail=self.config.repair_torn_tail,
        )
        try:
            segments = SimpleSegmentManager(
                self.data_dir,
                prefix=self.prefix,
                max_bytes=self.config.segment_max_bytes,
                sync_writes=self.config.sync_writes,
            )
        except Exception:
            index_log.close()
            raise
        return index_log, segments

    def recover(self) -> None:
        """Resolve a compaction interrupted by a crash, before any file is opened."""
        state = self.manifest.state

        if state is CompactionState.STABLE:
            if self._copy_index_path().exists() or self._copy_ordinals():
                logger.warning(f"Deleting stray compaction copy files in {self.data_dir}")
                self.discard_copies()
            return

        if state is CompactionState.COMPACTING:
            logger.warning(f"Discarding incomplete compaction in {self.data_dir}")
            self.discard_copies()
            self.manifest.mark_stable()
            return

        logger.info(
            f"Finishing committed compaction in {self.data_dir} "
            f"({self.manifest.segment_count} segment(s))"
        )
        if not self._copy_index_path().exists() and self._copy_ordinals():
            raise RecoveryError(
                f"Committed compaction in {self.data_dir} has copy segments but no copy index"
            )
        self.finalize_swap(self.manifest.segment_count)
        self.manifest.mark_stable()
