"""Append-only on-disk time series for a single asset.

File format: one JSON object per line,
    {"asset_code": "EUR", "iso_date": "2024-01-01", "rate": "0.9000000000", "source": "oxr"}
ordered by strictly increasing iso_date.

Readers never lock. All reader-visible state lives in one immutable
_Snapshot that the writer replaces with a single attribute assignment
after the bytes it describes are fsynced. A reader captures the snapshot
once and never reads past snapshot.size, so it observes either the
pre-append or the post-append series.

Backfill rewrites the file through a temp file and os.replace, and every
replace bumps the snapshot generation. A reader accepts the file it opened
only when its inode matches the live snapshot and that snapshot has the
generation the reader expects; otherwise it moves to the live snapshot.
Inode numbers alone are not enough because the filesystem reuses them.
"""

import json
import os
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import BinaryIO

from rates.assets import AssetSymbol
from rates.exceptions import (
    AppendTimeout,
    CorruptStore,
    DuplicateTimestamp,
    InvalidQuote,
    NotFound,
    OutOfOrder,
)
from rates.logging import get_logger
from rates.models import PriceRecord, quantize
from rates.store.index import SparseIndex

logger = get_logger(__name__)

_ROW_KEYS = {"asset_code", "iso_date", "rate", "source"}

# Pause between attempts to open the file matching the published snapshot
# while a backfill swaps it underneath a reader.
_REOPEN_DELAY = 0.0005


@dataclass(frozen=True)
class _Snapshot:
    index: SparseIndex
    size: int
    count: int
    first: PriceRecord | None = None
    latest: PriceRecord | None = None
    inode: int | None = None
    generation: int = 0  # bumped whenever the file is replaced or reloaded


@dataclass(frozen=True)
class SeriesStats:
    asset: AssetSymbol
    count: int
    first: date | None
    last: date | None


def encode_record(record: PriceRecord) -> bytes:
    return (json.dumps(record.to_row(), separators=(",", ":")) + "\n").encode("utf-8")


class TimeSeries:
    """One asset's persisted history plus its sparse index."""

    def __init__(self, asset: AssetSymbol, data_dir: Path, index_interval: int) -> None:
        if index_interval < 1:
            raise ValueError("index_interval must be >= 1")
        self.asset = asset
        self.data_path = data_dir / f"{asset.code}.jsonl"
        self.index_path = data_dir / f"{asset.code}.idx.json"
        self._interval = index_interval
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot(index=SparseIndex(index_interval), size=0, count=0)

    # ──────────────────────────────────────────────
    # Loading
    # ──────────────────────────────────────────────

    def load(self) -> None:
        """Scan the data file once, validating every line, and rebuild the index.

        Raises CorruptStore on the first malformed, foreign or unordered line,
        or on a trailing partial line.
        """
        if not self.data_path.exists():
            self._snapshot = _Snapshot(index=SparseIndex(self._interval), size=0, count=0)
            return

        with open(self.data_path, "rb") as f:
            inode = os.fstat(f.fileno()).st_ino
            snapshot = self._build_snapshot(
                f.read(), inode, generation=self._snapshot.generation + 1
            )
        self._snapshot = snapshot

        if not snapshot.index.matches_file(self.index_path, snapshot.size, snapshot.count):
            snapshot.index.write(self.index_path, snapshot.size, snapshot.count)
            logger.info(
                "sparse_index_rebuilt",
                asset=self.asset.code,
                samples=len(snapshot.index),
                records=snapshot.count,
            )

    def _build_snapshot(
        self, data: bytes, inode: int | None, generation: int
    ) -> _Snapshot:
        index = SparseIndex(self._interval)
        first: PriceRecord | None = None
        latest: PriceRecord | None = None
        count = 0
        offset = 0
        for line_no, line in enumerate(data.splitlines(keepends=True), 1):
            if not line.endswith(b"\n"):
                raise CorruptStore(
                    f"{self.data_path}: line {line_no} is truncated (no newline)"
                )
            record = self._decode(line, line_no)
            if latest is not None and record.timestamp <= latest.timestamp:
                raise CorruptStore(
                    f"{self.data_path}: line {line_no} date {record.timestamp} "
                    f"does not follow {latest.timestamp}"
                )
            if count % self._interval == 0:
                index = index.with_sample(record.timestamp, offset)
            if first is None:
                first = record
            latest = record
            count += 1
            offset += len(line)
        return _Snapshot(
            index=index,
            size=offset,
            count=count,
            first=first,
            latest=latest,
            inode=inode,
            generation=generation,
        )

    def _decode(self, line: bytes, line_no: int | None = None) -> PriceRecord:
        where = f"{self.data_path}: line {line_no}" if line_no else str(self.data_path)
        try:
            row = json.loads(line)
        except ValueError as e:
            raise CorruptStore(f"{where}: not valid JSON ({e})") from e
        if not isinstance(row, dict) or set(row) != _ROW_KEYS:
            raise CorruptStore(f"{where}: expected keys {sorted(_ROW_KEYS)}")
        if row["asset_code"] != self.asset.code:
            raise CorruptStore(
                f"{where}: asset {row['asset_code']!r} in {self.asset.code} series"
            )
        iso_date, text = row["iso_date"], row["rate"]
        if not isinstance(iso_date, str) or not isinstance(text, str):
            raise CorruptStore(f"{where}: iso_date and rate must be strings")
        try:
            day = date.fromisoformat(iso_date)
            rate = Decimal(text)
        except (ValueError, InvalidOperation) as e:
            raise CorruptStore(f"{where}: bad date or rate ({e})") from e
        if day.isoformat() != iso_date:
            raise CorruptStore(f"{where}: date {iso_date!r} is not YYYY-MM-DD")
        if not rate.is_finite() or rate <= 0:
            raise CorruptStore(f"{where}: rate {text!r} is not positive")
        places = self.asset.rate_precision
        if rate.as_tuple().exponent != -places or f"{rate:f}" != text:
            raise CorruptStore(f"{where}: rate {text!r} is not written at {places} places")
        if not isinstance(row["source"], str):
            raise CorruptStore(f"{where}: source must be a string")
        return PriceRecord(asset=self.asset, timestamp=day, rate=rate, source=row["source"])

    # ──────────────────────────────────────────────
    # Writing
    # ──────────────────────────────────────────────

    def _canonical(self, record: PriceRecord) -> PriceRecord:
        rate = record.rate
        if not isinstance(rate, Decimal) or not rate.is_finite() or rate <= 0:
            raise InvalidQuote(f"rate must be a positive finite Decimal: {rate!r}")
        scaled = quantize(rate, self.asset.rate_precision)
        if scaled != rate:
            raise InvalidQuote(
                f"rate {rate} exceeds {self.asset.rate_precision} places for {self.asset.code}"
            )
        return replace(record, asset=self.asset, rate=scaled)

    def append(self, record: PriceRecord, deadline: float | None = None) -> None:
        """Append a record newer than the current latest.

        The line is written and fsynced, then the new snapshot is published.
        If `deadline` (time.monotonic) has passed by then, the file is
        truncated back and AppendTimeout is raised with nothing published.
        """
        record = self._canonical(record)
        with self._write_lock:
            snap = self._snapshot
            if snap.latest is not None and record.timestamp <= snap.latest.timestamp:
                if self._contains(snap, record.timestamp):
                    raise DuplicateTimestamp(
                        f"{self.asset.code} already has a record for {record.timestamp}"
                    )
                raise OutOfOrder(
                    f"{self.asset.code} {record.timestamp} is not after "
                    f"latest {snap.latest.timestamp}; use backfill"
                )
            self._append_locked(snap, record, deadline)

    def _append_locked(
        self, snap: _Snapshot, record: PriceRecord, deadline: float | None
    ) -> None:
        line = encode_record(record)
        created = not self.data_path.exists()
        with open(self.data_path, "ab") as f:
            if f.tell() != snap.size:
                # leftovers of a failed write past the published size
                f.truncate(snap.size)
            try:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
                if deadline is not None and time.monotonic() > deadline:
                    raise AppendTimeout(
                        f"{self.asset.code} {record.timestamp} append missed its deadline"
                    )
            except BaseException:
                f.truncate(snap.size)
                f.flush()
                os.fsync(f.fileno())
                raise
            inode = os.fstat(f.fileno()).st_ino
        if created:
            _fsync_dir(self.data_path.parent)

        index = snap.index
        if snap.count % self._interval == 0:
            index = index.with_sample(record.timestamp, snap.size)
        new_snap = _Snapshot(
            index=index,
            size=snap.size + len(line),
            count=snap.count + 1,
            first=snap.first or record,
            latest=record,
            inode=inode,
            generation=snap.generation,
        )
        self._snapshot = new_snap
        self._write_index(new_snap)

    def backfill(self, record: PriceRecord, deadline: float | None = None) -> None:
        """Insert a record at any date not already present.

        Past dates rewrite the whole file to a temp file which is published
        with os.replace; a date after the latest is a plain append.
        """
        record = self._canonical(record)
        with self._write_lock:
            snap = self._snapshot
            if snap.latest is None or record.timestamp > snap.latest.timestamp:
                self._append_locked(snap, record, deadline)
                return
            if self._contains(snap, record.timestamp):
                raise DuplicateTimestamp(
                    f"{self.asset.code} already has a record for {record.timestamp}"
                )

            with open(self.data_path, "rb") as f:
                data = f.read(snap.size)
            position = self._insert_position(snap, record.timestamp)
            new_data = data[:position] + encode_record(record) + data[position:]
            # parsed up front so publishing can follow the rename directly
            new_snap = self._build_snapshot(new_data, None, generation=snap.generation + 1)

            tmp = self.data_path.with_name(self.data_path.name + ".tmp")
            try:
                with open(tmp, "wb") as f:
                    f.write(new_data)
                    f.flush()
                    os.fsync(f.fileno())
                if deadline is not None and time.monotonic() > deadline:
                    raise AppendTimeout(
                        f"{self.asset.code} {record.timestamp} backfill missed its deadline"
                    )
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
            os.replace(tmp, self.data_path)
            new_snap = replace(new_snap, inode=os.stat(self.data_path).st_ino)
            self._snapshot = new_snap
            _fsync_dir(self.data_path.parent)
            self._write_index(new_snap)

    def _insert_position(self, snap: _Snapshot, day: date) -> int:
        """Byte offset of the first record dated after `day`."""
        with open(self.data_path, "rb") as f:
            for offset, record in self._scan(f, snap, snap.index.seek(day), snap.size):
                if record.timestamp > day:
                    return offset
        return snap.size

    def _write_index(self, snap: _Snapshot) -> None:
        try:
            snap.index.write(self.index_path, snap.size, snap.count)
        except OSError:
            # the companion index is derived data; load() rebuilds a stale one
            logger.warning("sparse_index_write_failed", asset=self.asset.code, exc_info=True)

    # ──────────────────────────────────────────────
    # Reading
    # ──────────────────────────────────────────────

    def _open(self, snap: _Snapshot | None = None) -> tuple[_Snapshot, BinaryIO | None]:
        """Open the data file together with a snapshot that describes it.

        A pinned snapshot is kept across appends. Once a backfill has replaced
        the file the reader moves to the live snapshot, and while a replace is
        being published it waits for the live snapshot to catch up.
        """
        while True:
            current = snap if snap is not None else self._snapshot
            if current.count == 0:
                return current, None
            f = open(self.data_path, "rb")
            inode = os.fstat(f.fileno()).st_ino
            live = self._snapshot
            if inode == live.inode and live.generation == current.generation:
                return current, f
            f.close()
            snap = None
            time.sleep(_REOPEN_DELAY)

    def _scan(
        self, f: BinaryIO, snap: _Snapshot, start: int, stop: int
    ) -> Iterator[tuple[int, PriceRecord]]:
        f.seek(start)
        offset = start
        stop = min(stop, snap.size)
        while offset < stop:
            line = f.readline()
            if not line:
                raise CorruptStore(f"{self.data_path} is shorter than its index")
            yield offset, self._decode(line)
            offset += len(line)

    def _contains(self, snap: _Snapshot, day: date) -> bool:
        found = self._as_of(snap, day)
        return found is not None and found.timestamp == day

    def _as_of(self, snap: _Snapshot, day: date) -> PriceRecord | None:
        if snap.latest is None or snap.first is None or day < snap.first.timestamp:
            return None
        if day >= snap.latest.timestamp:
            return snap.latest
        snap, f = self._open(snap)
        if f is None:
            return None
        block = snap.index.block_for(day)
        found: PriceRecord | None = None
        with f:
            start = snap.index.offsets[block]
            for _, record in self._scan(f, snap, start, snap.index.block_end(block, snap.size)):
                if record.timestamp > day:
                    break
                found = record
        return found

    def latest(self) -> PriceRecord:
        snap = self._snapshot
        if snap.latest is None:
            raise NotFound(f"no records for {self.asset.code}")
        return snap.latest

    def as_of(self, day: date) -> PriceRecord:
        found = self._as_of(self._snapshot, day)
        if found is None:
            raise NotFound(f"no {self.asset.code} record on or before {day}")
        return found

    def at(self, day: date) -> PriceRecord:
        found = self._as_of(self._snapshot, day)
        if found is None or found.timestamp != day:
            raise NotFound(f"no {self.asset.code} record for {day}")
        return found

    def range(self, start: date, end: date) -> "RecordRange":
        return RecordRange(self, start, end, self._snapshot)

    def iter_range(
        self, start: date, end: date, snap: _Snapshot | None = None
    ) -> Iterator[PriceRecord]:
        if start > end:
            return
        snap, f = self._open(snap)
        if f is None:
            return
        with f:
            for _, record in self._scan(f, snap, snap.index.seek(start), snap.size):
                if record.timestamp > end:
                    break
                if record.timestamp >= start:
                    yield record

    def stats(self) -> SeriesStats:
        snap = self._snapshot
        return SeriesStats(
            asset=self.asset,
            count=snap.count,
            first=snap.first.timestamp if snap.first else None,
            last=snap.latest.timestamp if snap.latest else None,
        )


class RecordRange:
    """Lazy, restartable view of records with start <= timestamp <= end.

    Iterating twice yields the same records: the snapshot is pinned when the
    range is created, so later appends are not picked up. A backfill that
    replaces the file in between moves the view onto the new snapshot.
    """

    def __init__(
        self, series: TimeSeries | None, start: date, end: date, snap: _Snapshot | None = None
    ) -> None:
        self._series = series
        self._snap = snap
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[PriceRecord]:
        if self._series is None:
            return iter(())
        return self._series.iter_range(self.start, self.end, self._snap)

    def __repr__(self) -> str:
        code = self._series.asset.code if self._series else None
        return f"RecordRange(asset={code!r}, start={self.start}, end={self.end})"


def _fsync_dir(path: Path) -> None:
    """Persist a directory entry (new or replaced file). POSIX only."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
