#!/usr/bin/env python3
"""Append Store Demo Driver

Bulk-loads random-length text records, removes a fraction of them to drive
compaction, then reopens the store and verifies every surviving value.
Store statistics are sampled to a CSV file along the way.

Usage:
    python demo/store_demo_driver.py --records 50000 --remove-fraction 0.4
"""

from __future__ import annotations

import argparse
import csv
import logging
import os
import random
import shutil
import time
import zlib
from pathlib import Path

from append_store import SimpleSegmentStore, StoreConfig
from append_store.components.codec import BytesCodec

STATEMENT = (
    b"A log-structured store never overwrites a value in place. New records are "
    b"appended to the end of the current data segment, a small index frame points "
    b"at them, and space held by removed records is reclaimed by rewriting the "
    b"live records into a fresh generation of files once enough of them are gone."
)


def run_demo(args: argparse.Namespace) -> None:
    """Run the demo workload and collect metrics."""
    cfg = StoreConfig(
        data_dir=args.data_dir,
        load_factor=args.load_factor,
        segment_max_bytes=args.segment_max_bytes,
        sync_writes=args.sync_writes,
    )
    rng = random.Random(args.seed)
    codec = BytesCodec()
    checksums: dict[str, int] = {}

    print(f"Starting append store demo in {args.data_dir}")
    print(f"Config: load_factor={cfg.load_factor}, segment={cfg.segment_max_bytes} bytes")
    print(f"Workload: {args.records} records, remove {args.remove_fraction:.0%}")
    print(f"Output: {args.out_csv}")

    with open(args.out_csv, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["ts_ms", "phase", "ops", "size", "capacity", "segments", "data_bytes"])

        with SimpleSegmentStore(cfg, codec) as db:
            t_start = time.time()
            for i in range(args.records):
                key = db.generate_key()
                value = random_record(rng)
                checksums[key] = zlib.crc32(value)
                db.append(key, value)
                if (i + 1) % args.sample_every == 0:
                    w.writerow(sample_row(db, "append", i + 1))
            db.sync()
            report("Appended", args.records, time.time() - t_start)

            t_start = time.time()
            sampled = rng.sample(sorted(checksums), min(args.reads, len(checksums)))
            for key in sampled:
                if zlib.crc32(db.get(key)) != checksums[key]:
                    raise SystemExit(f"Checksum mismatch for {key}")
            report("Read", len(sampled), time.time() - t_start)

            t_start = time.time()
            doomed = rng.sample(sorted(checksums), int(len(checksums) * args.remove_fraction))
            for i, key in enumerate(doomed):
                capacity = db.capacity
                db.remove(key)
                del checksums[key]
                if db.capacity < capacity:
                    print(f"  COMPACTION after {i + 1} removals: capacity {capacity} -> {db.capacity}")
                    w.writerow(sample_row(db, "compact", i + 1))
                elif (i + 1) % args.sample_every == 0:
                    w.writerow(sample_row(db, "remove", i + 1))
            report("Removed", len(doomed), time.time() - t_start)

        t_start = time.time()
        with SimpleSegmentStore(cfg, codec) as db:
            if len(db) != len(checksums):
                raise SystemExit(f"Expected {len(checksums)} live keys after reopen, found {len(db)}")
            for key, checksum in checksums.items():
                if zlib.crc32(db.get(key)) != checksum:
                    raise SystemExit(f"Checksum mismatch for {key} after reopen")
            w.writerow(sample_row(db, "verify", len(checksums)))
        report("Verified", len(checksums), time.time() - t_start)

    print(f"Demo complete. Metrics written to {args.out_csv}")


def random_record(rng: random.Random) -> bytes:
    """Slice a random run of text out of STATEMENT."""
    half = len(STATEMENT) // 2
    lower = rng.randrange(half)
    upper = half + rng.randrange(half)
    return STATEMENT[lower:upper]


def report(label: str, count: int, duration: float) -> None:
    rate = count / duration if duration > 0 else float("inf")
    print(f"  {label} {count} records in {duration:.2f}s ({rate:.0f} ops/sec)")


def sample_row(db: SimpleSegmentStore, phase: str, ops: int) -> list:
    """Sample current metrics from the store."""
    # Access internals for demo metrics (read-only)
    paths = db._segments.paths
    return [
        int(time.time() * 1000),
        phase,
        ops,
        db.size,
        db.capacity,
        len(paths),
        sum(p.stat().st_size for p in paths),
    ]


def main() -> None:
    """Parse arguments and run demo."""
    p = argparse.ArgumentParser(description="Append store demo driver")

    # Engine configuration
    p.add_argument("--data-dir", default="/tmp/append_store_demo", help="Data directory")
    p.add_argument("--load-factor", type=float, default=0.75, help="Compaction load factor")
    p.add_argument(
        "--segment-max-bytes", type=int, default=1 << 20, help="Data segment size limit"
    )
    p.add_argument("--sync-writes", action="store_true", help="Fsync after every write")

    # Workload configuration
    p.add_argument("--records", type=int, default=50000, help="Records to append")
    p.add_argument("--reads", type=int, default=5000, help="Random reads to check")
    p.add_argument(
        "--remove-fraction", type=float, default=0.4, help="Fraction of records to remove"
    )
    p.add_argument("--seed", type=int, default=None, help="Random seed")

    # Sampling configuration
    p.add_argument("--sample-every", type=int, default=1000, help="Sample every N operations")
    p.add_argument("--out-csv", default="/tmp/append_store_metrics.csv", help="Output CSV file")
    p.add_argument("--verbose", action="store_true", help="Log store activity")

    args = p.parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    shutil.rmtree(args.data_dir, ignore_errors=True)
    os.makedirs(args.data_dir, exist_ok=True)
    Path(args.out_csv).parent.mkdir(parents=True, exist_ok=True)

    run_demo(args)


if __name__ == "__main__":
    main()
