"""Integration tests for the append store.

Tests cover:
1. Round trip and recovery by replay
2. Duplicate rejection and removal semantics
3. Tombstone durability
4. Compaction trigger and validity
5. Segment rotation
6. Closed-store behaviour
7. Failure handling and crash recovery
"""

import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import patch

import pytest

from append_store import (
    BytesCodec,
    ClosedStoreError,
    CompactionError,
    ConfigurationError,
    CorruptionError,
    DuplicateKeyError,
    JSONCodec,
    RecoveryError,
    SimpleSegmentStore,
    StoreConfig,
    StoreIOError,
)
from append_store.components.manifest import CompactionState, SimpleManifest


@dataclass
class Car:
    brand: str
    model: str
    year: int


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


def open_store(temp_dir, **options):
    options.setdefault("sync_writes", False)
    return SimpleSegmentStore(StoreConfig(data_dir=str(temp_dir), **options), BytesCodec())


@pytest.fixture
def store(temp_dir):
    """Create store for tests."""
    store = open_store(temp_dir)
    yield store
    store.close()


def read_manifest_state(temp_dir):
    return SimpleManifest(temp_dir / "store.manifest").state


def test_basic_append_get(store):
    """Test basic append and get operations."""
    store.append("key1", b"value1")
    store.append("key2", b"value2")

    assert store.get("key1") == b"value1"
    assert store.get("key2") == b"value2"
    assert store.get("nonexistent") is None
    assert len(store) == 2
    assert store.capacity == 2


def test_empty_value_round_trip(store):
    """Test that an empty value is stored and read back."""
    store.append("empty", b"")

    assert store.get("empty") == b""
    assert "empty" in store


def test_recovery_by_replay(temp_dir):
    """Test values survive close and reopen."""
    store = open_store(temp_dir)
    expected = {f"key{i:03d}": f"value{i}".encode() * (i + 1) for i in range(50)}
    for key, value in expected.items():
        store.append(key, value)
    store.close()

    store = open_store(temp_dir)
    for key, value in expected.items():
        assert store.get(key) == value
    assert len(store) == 50
    assert store.capacity == 50
    store.close()


def test_default_codec_stores_objects(temp_dir):
    """Test the default codec round-trips arbitrary objects."""
    with SimpleSegmentStore.open(temp_dir, sync_writes=False) as store:
        store.append("1", Car("Kia", "Rio", 2016))

    with SimpleSegmentStore.open(temp_dir) as store:
        car = store.get("1")

    assert car == Car("Kia", "Rio", 2016)


def test_duplicate_rejection(store, temp_dir):
    """Test appending a live key fails and leaves the store unchanged."""
    store.append("key1", b"first")
    index_size = (temp_dir / "store.ind").stat().st_size

    with pytest.raises(DuplicateKeyError):
        store.append("key1", b"second")

    assert store.get("key1") == b"first"
    assert len(store) == 1
    assert store.capacity == 1
    assert (temp_dir / "store.ind").stat().st_size == index_size


def test_non_string_key_rejected(store):
    """Test keys must be strings."""
    with pytest.raises(TypeError):
        store.append(b"bytes-key", b"value")


def test_remove_semantics(store):
    """Test removal of present and absent keys."""
    store.append("key1", b"value1")
    store.append("key2", b"value2")

    assert store.remove("missing") is False
    assert len(store) == 2

    assert store.remove("key1") is True
    assert store.get("key1") is None
    assert "key1" not in store
    assert store.remove("key1") is False
    assert store.get("key2") == b"value2"


def test_tombstone_durability(temp_dir):
    """Test a removed key stays removed after reopen."""
    store = open_store(temp_dir, load_factor=0.1)
    for i in range(5):
        store.append(f"key{i}", b"v")
    store.remove("key2")
    store.close()

    store = open_store(temp_dir, load_factor=0.1)
    assert store.get("key2") is None
    assert len(store) == 4
    assert store.capacity == 5
    store.close()


def test_reappend_after_remove(temp_dir):
    """Test a removed key can be appended again and survives replay."""
    store = open_store(temp_dir, load_factor=0.1)
    store.append("key1", b"old")
    store.append("key2", b"other")
    store.remove("key1")
    store.append("key1", b"new")
    assert store.get("key1") == b"new"
    store.close()

    store = open_store(temp_dir, load_factor=0.1)
    assert store.get("key1") == b"new"
    assert store.capacity == 3
    assert len(store) == 2
    store.close()


def test_compaction_trigger(store, temp_dir):
    """Test compaction runs only once the live ratio drops below the load factor."""
    values = {f"key{i}": f"value-{i}".encode() * 10 for i in range(4)}
    for key, value in values.items():
        store.append(key, value)
    assert (store.capacity, store.size) == (4, 4)

    store.remove("key0")
    assert (store.capacity, store.size) == (4, 3)  # 0.75 is not < 0.75

    store.remove("key1")
    assert (store.capacity, store.size) == (2, 2)

    assert store.get("key2") == values["key2"]
    assert store.get("key3") == values["key3"]
    assert store.get("key0") is None
    assert store.get("key1") is None

    assert not (temp_dir / "store_copy.ind").exists()
    assert not list(temp_dir.glob("*_copy.dat"))
    assert read_manifest_state(temp_dir) is CompactionState.STABLE


def test_compaction_reclaims_space(temp_dir):
    """Test compaction shrinks index and data files."""
    store = open_store(temp_dir)
    for i in range(10):
        store.append(f"key{i}", b"x" * 1000)
    index_before = (temp_dir / "store.ind").stat().st_size
    data_before = (temp_dir / "store_0000.dat").stat().st_size

    for i in range(3):
        store.remove(f"key{i}")

    assert store.capacity == 7
    assert (temp_dir / "store.ind").stat().st_size < index_before
    assert (temp_dir / "store_0000.dat").stat().st_size == data_before - 3000
    store.close()


def test_compaction_persists_across_reopen(temp_dir):
    """Test the compacted generation is replayed correctly."""
    store = open_store(temp_dir)
    for i in range(8):
        store.append(f"key{i}", f"value{i}".encode())
    for i in range(0, 8, 2):
        store.remove(f"key{i}")
    # Further appends and removals land in the new generation
    store.append("late", b"arrival")
    store.remove("key1")
    store.close()

    store = open_store(temp_dir)
    assert store.keys() == ["key3", "key5", "key7", "late"]
    for i in (3, 5, 7):
        assert store.get(f"key{i}") == f"value{i}".encode()
    assert store.get("late") == b"arrival"
    store.close()


def test_compaction_across_segments(temp_dir):
    """Test compaction over many rotated segments keeps values and renumbers files."""
    store = open_store(temp_dir, segment_max_bytes=256)
    values = {f"key{i:03d}": bytes([i]) * 100 for i in range(40)}
    for key, value in values.items():
        store.append(key, value)
    segments_before = len(list(temp_dir.glob("store_*.dat")))
    assert segments_before > 5

    for i in range(0, 40, 2):
        store.remove(f"key{i:03d}")

    survivors = {k: v for i, (k, v) in enumerate(values.items()) if i % 2 == 1}
    assert len(store) == len(survivors)
    assert store.capacity < 40
    for key, value in survivors.items():
        assert store.get(key) == value

    names = sorted(p.name for p in temp_dir.glob("store_*.dat"))
    assert len(names) < segments_before
    assert names == [f"store_{i:04d}.dat" for i in range(len(names))]
    store.close()

    store = open_store(temp_dir, segment_max_bytes=256)
    for key, value in survivors.items():
        assert store.get(key) == value
    store.close()


def test_remove_everything(store):
    """Test removing every key compacts to an empty generation that still accepts appends."""
    for i in range(4):
        store.append(f"key{i}", b"v")
    for i in range(4):
        store.remove(f"key{i}")

    assert store.size == 0
    assert store.capacity == 0

    store.append("fresh", b"start")
    assert store.get("fresh") == b"start"


def test_load_factor_above_one_compacts_every_remove(temp_dir):
    """Test a load factor above 1 compacts on every removal."""
    store = open_store(temp_dir, load_factor=1.5)
    for i in range(5):
        store.append(f"key{i}", b"v")

    store.remove("key0")
    assert store.capacity == 4
    store.remove("key1")
    assert store.capacity == 3
    store.close()


def test_manual_compaction(temp_dir):
    """Test compact() drops tombstones regardless of the load factor."""
    store = open_store(temp_dir, load_factor=0.01)
    for i in range(10):
        store.append(f"key{i}", b"v")
    store.remove("key0")
    assert store.capacity == 10

    store.compact()

    assert store.capacity == 9
    assert len(store) == 9
    store.close()


def test_segment_rotation(store, temp_dir):
    """Test values past 1 MiB rotate into a new segment without spanning two."""
    value_size = 1000
    keys = [f"key{i:05d}" for i in range(1100)]
    for i, key in enumerate(keys):
        store.append(key, bytes([i % 256]) * value_size)

    assert (temp_dir / "store_0001.dat").exists()

    segment_sizes = {
        int(p.stem.split("_")[1]): p.stat().st_size for p in temp_dir.glob("store_*.dat")
    }
    assert segment_sizes[0] > 1 << 20
    for key in keys:
        entry = store._index.get(key)
        assert entry.data_offset + entry.data_length <= segment_sizes[entry.segment_id]

    first, last = keys[0], keys[-1]
    assert store._index.get(first).segment_id == 0
    assert store._index.get(last).segment_id == 1
    assert store.get(first) == bytes([0]) * value_size
    assert store.get(last) == bytes([1099 % 256]) * value_size


def test_generate_key(store):
    """Test generated keys are UUID-v4 strings and unique."""
    keys = {store.generate_key() for _ in range(100)}

    assert len(keys) == 100
    for key in keys:
        assert uuid.UUID(key).version == 4

    key = store.generate_key()
    store.append(key, b"value")
    assert store.get(key) == b"value"


def test_keys_sorted(store):
    """Test keys() lists live keys in sorted order."""
    for key in ["c", "a", "d", "b"]:
        store.append(key, b"v")
    store.remove("d")

    assert store.keys() == ["a", "b", "c"]


def test_closed_store(temp_dir):
    """Test every operation but close fails after close."""
    store = open_store(temp_dir)
    store.append("key1", b"value1")
    store.close()
    store.close()  # idempotent

    assert store.closed
    assert store._index_log._fd is None
    assert all(fd is None for fd in store._segments._files)

    operations = [
        lambda: store.append("key2", b"v"),
        lambda: store.get("key1"),
        lambda: store.remove("key1"),
        lambda: store.generate_key(),
        lambda: store.keys(),
        lambda: store.compact(),
        lambda: store.sync(),
        lambda: len(store),
        lambda: "key1" in store,
    ]
    for operation in operations:
        with pytest.raises(ClosedStoreError):
            operation()


def test_context_manager_closes(temp_dir):
    """Test the context manager releases the store."""
    with open_store(temp_dir) as store:
        store.append("key1", b"value1")

    assert store.closed


def test_missing_directory(temp_dir):
    """Test construction fails when the directory does not exist."""
    with pytest.raises(StoreIOError, match="does not exist"):
        open_store(temp_dir / "abc")


def test_invalid_load_factor(temp_dir):
    """Test construction fails with a non-positive load factor."""
    with pytest.raises(ConfigurationError):
        SimpleSegmentStore.open(temp_dir, load_factor=0.0)


def test_independent_instances(temp_dir):
    """Test stores over different directories do not share state."""
    (temp_dir / "a").mkdir()
    (temp_dir / "b").mkdir()
    store_a = open_store(temp_dir / "a")
    store_b = open_store(temp_dir / "b")

    store_a.append("shared", b"from-a")
    store_b.append("shared", b"from-b")

    assert store_a.get("shared") == b"from-a"
    assert store_b.get("shared") == b"from-b"
    store_a.close()
    store_b.close()


def test_remove_rolls_back_on_failed_rewrite(store):
    """Test a failed tombstone rewrite restores the key in memory."""
    store.append("key1", b"value1")

    with patch.object(
        store._index_log, "rewrite_tombstone", side_effect=StoreIOError("disk full")
    ):
        with pytest.raises(StoreIOError, match="disk full"):
            store.remove("key1")

    assert store.get("key1") == b"value1"
    assert len(store) == 1
    assert store.remove("key1") is True


def test_append_failure_leaves_no_key(store):
    """Test an index write failure does not expose the key."""
    with patch.object(
        store._index_log, "append_entry", side_effect=StoreIOError("disk full")
    ):
        with pytest.raises(StoreIOError):
            store.append("key1", b"value1")

    assert "key1" not in store
    assert store.capacity == 0
    store.append("key1", b"value1")
    assert store.get("key1") == b"value1"


class ShortWriteFile:
    """File wrapper whose first write stores half its bytes and then fails."""

    def __init__(self, inner):
        self._inner = inner
        self._armed = True

    def write(self, data):
        if self._armed:
            self._armed = False
            self._inner.write(data[: len(data) // 2])
            self._inner.flush()
            raise OSError(28, "No space left on device")
        return self._inner.write(data)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_partial_index_write_does_not_poison_later_appends(temp_dir):
    """Test appends after a half-written index frame survive reopen."""
    store = open_store(temp_dir)
    store.append("key1", b"value1")
    index_size = (temp_dir / "store.ind").stat().st_size
    store._index_log._fd = ShortWriteFile(store._index_log._fd)

    with pytest.raises(StoreIOError, match="No space left"):
        store.append("key2", b"value2")
    assert "key2" not in store
    assert (temp_dir / "store.ind").stat().st_size == index_size

    store.append("key3", b"value3")
    assert store.get("key3") == b"value3"
    store.close()

    with open_store(temp_dir) as store:
        assert store.get("key1") == b"value1"
        assert store.get("key2") is None
        assert store.get("key3") == b"value3"
        assert store.capacity == 2


def test_unencodable_key_rejected_before_write(store, temp_dir):
    """Test a key with a lone surrogate is rejected without touching any file."""
    segment = temp_dir / "store_0000.dat"
    index_file = temp_dir / "store.ind"
    store.append("key1", b"value1")
    segment_size = segment.stat().st_size
    index_size = index_file.stat().st_size

    with pytest.raises(ValueError, match="UTF-8"):
        store.append("\ud800", b"payload")

    assert segment.stat().st_size == segment_size
    assert index_file.stat().st_size == index_size
    assert len(store) == 1


def test_get_default_distinguishes_stored_none(temp_dir):
    """Test a sentinel default tells a stored None from a missing key."""
    missing = object()
    with SimpleSegmentStore.open(temp_dir, sync_writes=False) as store:
        store.append("nothing", None)

        assert store.get("nothing") is None
        assert store.get("nothing", missing) is None
        assert store.get("absent", missing) is missing
        assert store.get("absent") is None


def test_decode_failure_is_corruption(temp_dir):
    """Test undecodable value bytes surface as CorruptionError."""
    config = StoreConfig(data_dir=str(temp_dir), sync_writes=False)
    with SimpleSegmentStore(config, JSONCodec()) as store:
        store.append("key1", {"a": 1})

    (temp_dir / "store_0000.dat").write_bytes(b"{garbage")

    with SimpleSegmentStore(config, JSONCodec()) as store:
        with pytest.raises(CorruptionError, match="Failed to decode"):
            store.get("key1")


def test_truncated_segment_read_fails(temp_dir):
    """Test a value whose bytes are missing from its segment is an I/O error."""
    with open_store(temp_dir) as store:
        store.append("key1", b"value1")

    (temp_dir / "store_0000.dat").write_bytes(b"va")

    with open_store(temp_dir) as store:
        with pytest.raises(StoreIOError, match="Read past end"):
            store.get("key1")


def test_corrupt_index_aborts_open(temp_dir):
    """Test a torn index log fails construction."""
    with open_store(temp_dir) as store:
        store.append("key1", b"value1")
        store.append("key2", b"value2")

    index_file = temp_dir / "store.ind"
    index_file.write_bytes(index_file.read_bytes()[:-2])

    with pytest.raises(CorruptionError):
        open_store(temp_dir)


def test_torn_tail_repair(temp_dir):
    """Test repair_torn_tail drops only the partial final entry."""
    with open_store(temp_dir) as store:
        store.append("key1", b"value1")
        store.append("key2", b"value2")

    index_file = temp_dir / "store.ind"
    index_file.write_bytes(index_file.read_bytes()[:-2])

    with open_store(temp_dir, repair_torn_tail=True) as store:
        assert store.get("key1") == b"value1"
        assert store.get("key2") is None
        assert store.capacity == 1
        store.append("key2", b"again")

    with open_store(temp_dir) as store:
        assert store.get("key2") == b"again"


def test_failed_compaction_rolls_back(store, temp_dir):
    """Test a compaction failure before commit keeps the old generation usable."""
    for i in range(4):
        store.append(f"key{i}", f"value{i}".encode())
    store.remove("key0")

    with patch.object(store._segments, "read_bytes", side_effect=StoreIOError("bad sector")):
        with pytest.raises(CompactionError, match="bad sector"):
            store.remove("key1")

    # The removal itself is durable and the store keeps working
    assert store.get("key1") is None
    assert store.get("key2") == b"value2"
    assert store.capacity == 4
    assert len(store) == 2
    assert not (temp_dir / "store_copy.ind").exists()
    assert not list(temp_dir.glob("*_copy.dat"))
    assert read_manifest_state(temp_dir) is CompactionState.STABLE

    store.append("key4", b"value4")
    assert store.get("key4") == b"value4"


def test_crash_before_commit_discards_copies(temp_dir):
    """Test an interrupted, uncommitted compaction is discarded on open."""
    with open_store(temp_dir) as store:
        store.append("key1", b"value1")

    (temp_dir / "store_copy.ind").write_bytes(b"\x00\x00\x00\x10partial")
    (temp_dir / "store_0000_copy.dat").write_bytes(b"partial")
    SimpleManifest(temp_dir / "store.manifest").mark_compacting()

    with open_store(temp_dir) as store:
        assert store.get("key1") == b"value1"

    assert not (temp_dir / "store_copy.ind").exists()
    assert not (temp_dir / "store_0000_copy.dat").exists()
    assert read_manifest_state(temp_dir) is CompactionState.STABLE


def test_stray_copies_deleted_when_stable(temp_dir):
    """Test leftover copy files without a manifest are removed."""
    with open_store(temp_dir) as store:
        store.append("key1", b"value1")
    (temp_dir / "store_0003_copy.dat").write_bytes(b"junk")

    with open_store(temp_dir) as store:
        assert store.get("key1") == b"value1"

    assert not (temp_dir / "store_0003_copy.dat").exists()


def test_crash_after_commit_rolls_forward(temp_dir):
    """Test a compaction interrupted after commit is finished on the next open."""
    store = open_store(temp_dir, segment_max_bytes=64)
    for i in range(12):
        store.append(f"key{i:02d}", f"value{i}".encode() * 8)

    for i in range(3):
        store.remove(f"key{i:02d}")  # 9/12 live, no compaction yet

    with patch.object(store._relocator, "finalize_swap", side_effect=OSError("power cut")):
        with pytest.raises(RecoveryError, match="power cut"):
            store.remove("key03")

    assert store.closed
    assert read_manifest_state(temp_dir) is CompactionState.COMMITTED
    assert (temp_dir / "store_copy.ind").exists()

    store = open_store(temp_dir, segment_max_bytes=64)
    assert read_manifest_state(temp_dir) is CompactionState.STABLE
    assert store.capacity == store.size == 8
    for i in range(4, 12):
        assert store.get(f"key{i:02d}") == f"value{i}".encode() * 8
    assert not list(temp_dir.glob("*_copy.*"))
    store.close()


def test_partial_swap_rolls_forward(temp_dir):
    """Test a swap interrupted between renames is completed on the next open."""
    store = open_store(temp_dir, segment_max_bytes=64)
    for i in range(12):
        store.append(f"key{i:02d}", f"value{i}".encode() * 8)
    for i in range(3):
        store.remove(f"key{i:02d}")

    real_replace = os.replace
    renamed_segments = []

    def flaky_replace(src, dst):
        if str(src).endswith("_copy.dat"):
            renamed_segments.append(src)
            if len(renamed_segments) > 2:
                raise OSError("power cut")
        real_replace(src, dst)

    with patch("os.replace", side_effect=flaky_replace):
        with pytest.raises(RecoveryError):
            store.remove("key03")

    assert len(renamed_segments) == 3
    store = open_store(temp_dir, segment_max_bytes=64)
    assert store.keys() == [f"key{i:02d}" for i in range(4, 12)]
    assert store.capacity == 8
    names = sorted(p.name for p in temp_dir.glob("store_*.dat"))
    assert names == [f"store_{i:04d}.dat" for i in range(len(names))]
    for i in range(4, 12):
        assert store.get(f"key{i:02d}") == f"value{i}".encode() * 8
    store.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
