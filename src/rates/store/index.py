"""Sparse date -> byte offset index over one series file.

Every `interval`-th record (0, interval, 2*interval, ...) contributes a
sample. A lookup bisects the samples to find the block that can contain
the target date, then the caller scans at most one block.
"""

import bisect
import json
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path


@dataclass(frozen=True)
class SparseIndex:
    """Immutable sample table. Extending returns a new instance."""

    interval: int
    dates: tuple[date, ...] = ()
    offsets: tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.dates)

    def with_sample(self, day: date, offset: int) -> "SparseIndex":
        return SparseIndex(
            interval=self.interval,
            dates=self.dates + (day,),
            offsets=self.offsets + (offset,),
        )

    def block_for(self, day: date) -> int:
        """Index of the last sample dated <= day, or -1 if day precedes all."""
        return bisect.bisect_right(self.dates, day) - 1

    def seek(self, day: date) -> int:
        """Byte offset to start scanning for the first record >= day."""
        block = self.block_for(day)
        return self.offsets[block] if block >= 0 else 0

    def block_end(self, block: int, size: int) -> int:
        """Byte offset where the given block stops."""
        if block + 1 < len(self.offsets):
            return self.offsets[block + 1]
        return size

    # ──────────────────────────────────────────────
    # Companion file
    # ──────────────────────────────────────────────

    def to_payload(self, size: int, count: int) -> dict:
        return {
            "interval": self.interval,
            "size": size,
            "count": count,
            "entries": [
                [d.isoformat(), off] for d, off in zip(self.dates, self.offsets)
            ],
        }

    def matches_file(self, path: Path, size: int, count: int) -> bool:
        """True when the companion file on disk describes this exact index."""
        try:
            with open(path, encoding="utf-8") as f:
                stored = json.load(f)
        except (OSError, ValueError):
            return False
        return stored == self.to_payload(size, count)

    def write(self, path: Path, size: int, count: int) -> None:
        """Persist via temp file + os.replace so readers never see half a file."""
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.to_payload(size, count), f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
