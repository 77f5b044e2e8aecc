"""Historical store: one append-only TimeSeries per non-pivot asset.

Usage:
    store = HistoricalStore(settings.storage)
    store.load()  # CorruptStore here is fatal
    store.append(record)
    store.get_as_of("EUR", date(2024, 1, 2))
"""

import threading
from datetime import date
from pathlib import Path

from rates.assets import AssetSymbol, get_asset, is_pivot
from rates.config import StorageSettings
from rates.exceptions import CorruptStore, NotFound, PivotNotStorable, UnknownAsset
from rates.logging import get_logger
from rates.models import PriceRecord
from rates.store.series import RecordRange, SeriesStats, TimeSeries

logger = get_logger(__name__)

_DATA_SUFFIX = ".jsonl"


class HistoricalStore:
    """Owns every asset's series and routes reads and writes to them.

    Series are created lazily on the first append for an asset and are
    never removed. Different assets share no locks; the only shared lock
    guards creation of a new series object.
    """

    def __init__(self, settings: StorageSettings) -> None:
        self._data_dir = Path(settings.data_dir)
        self._index_interval = settings.index_interval
        self._series: dict[str, TimeSeries] = {}
        self._create_lock = threading.Lock()
        self._loaded = False

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def load(self) -> None:
        """Scan all persisted series once and rebuild their indexes.

        Raises CorruptStore on any malformed data. Nothing is skipped or
        repaired; the store stays unusable until the files are fixed.
        """
        self._data_dir.mkdir(parents=True, exist_ok=True)
        for stray in self._data_dir.glob("*.tmp"):
            # unpublished output of an interrupted backfill or index write
            logger.warning("removing_unpublished_temp_file", path=str(stray))
            stray.unlink()

        series: dict[str, TimeSeries] = {}
        try:
            for path in sorted(self._data_dir.glob(f"*{_DATA_SUFFIX}")):
                code = path.name[: -len(_DATA_SUFFIX)]
                try:
                    asset = get_asset(code)
                except UnknownAsset:
                    raise CorruptStore(f"{path}: no such asset {code!r}") from None
                if asset.code != code:
                    raise CorruptStore(f"{path}: file name must be the upper-case code")
                if is_pivot(asset):
                    raise CorruptStore(f"{path}: the pivot {code} is never stored")
                ts = TimeSeries(asset, self._data_dir, self._index_interval)
                ts.load()
                series[code] = ts
        except CorruptStore as e:
            logger.error("store_corrupt", data_dir=str(self._data_dir), error=str(e))
            raise

        self._series = series
        self._loaded = True
        logger.info(
            "store_loaded",
            data_dir=str(self._data_dir),
            series=len(series),
            records=sum(s.stats().count for s in series.values()),
        )

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError("Store not loaded. Call load() first.")

    def _series_for_write(self, asset: AssetSymbol) -> TimeSeries:
        ts = self._series.get(asset.code)
        if ts is not None:
            return ts
        with self._create_lock:
            ts = self._series.get(asset.code)
            if ts is None:
                ts = TimeSeries(asset, self._data_dir, self._index_interval)
                self._series[asset.code] = ts
                logger.info("series_created", asset=asset.code)
            return ts

    def _series_for_read(self, asset: "str | AssetSymbol") -> tuple[AssetSymbol, TimeSeries | None]:
        self._require_loaded()
        symbol = get_asset(asset)
        return symbol, self._series.get(symbol.code)

    # ──────────────────────────────────────────────
    # Write
    # ──────────────────────────────────────────────

    def append(
        self,
        record: PriceRecord,
        *,
        backfill: bool = False,
        deadline: float | None = None,
    ) -> None:
        """Persist one record.

        Raises:
            PivotNotStorable: record is for the pivot currency with a rate
                other than 1. A pivot record at exactly 1 is accepted and
                ignored, since the pivot rate is implicit.
            OutOfOrder: not newer than the latest record (without backfill).
            DuplicateTimestamp: the day is already stored.
            AppendTimeout: deadline passed; nothing was published.
        """
        self._require_loaded()
        if is_pivot(record.asset):
            if record.rate != 1:
                raise PivotNotStorable(
                    f"{record.asset.code} is the pivot; its rate is always 1, got {record.rate}"
                )
            logger.debug(
                "pivot_record_ignored",
                asset=record.asset.code,
                date=record.timestamp.isoformat(),
            )
            return
        ts = self._series_for_write(get_asset(record.asset.code))
        if backfill:
            ts.backfill(record, deadline)
        else:
            ts.append(record, deadline)
        logger.debug(
            "record_appended",
            asset=record.asset.code,
            date=record.timestamp.isoformat(),
            rate=str(record.rate),
            source=record.source,
            backfill=backfill,
        )

    # ──────────────────────────────────────────────
    # Read
    # ──────────────────────────────────────────────

    def get_latest(self, asset: "str | AssetSymbol") -> PriceRecord:
        symbol, ts = self._series_for_read(asset)
        if ts is None:
            raise NotFound(f"no records for {symbol.code}")
        return ts.latest()

    def get_at(self, asset: "str | AssetSymbol", day: date) -> PriceRecord:
        """Exact-date lookup."""
        symbol, ts = self._series_for_read(asset)
        if ts is None:
            raise NotFound(f"no records for {symbol.code}")
        return ts.at(day)

    def get_as_of(self, asset: "str | AssetSymbol", day: date) -> PriceRecord:
        """Most recent record dated on or before `day`."""
        symbol, ts = self._series_for_read(asset)
        if ts is None:
            raise NotFound(f"no records for {symbol.code}")
        return ts.as_of(day)

    def get_range(self, asset: "str | AssetSymbol", start: date, end: date) -> RecordRange:
        """Records with start <= timestamp <= end, ascending, read lazily."""
        _, ts = self._series_for_read(asset)
        if ts is None:
            return RecordRange(None, start, end)
        return ts.range(start, end)

    def assets(self) -> list[AssetSymbol]:
        """Assets that have at least one stored record."""
        self._require_loaded()
        return sorted(
            (ts.asset for ts in list(self._series.values()) if ts.stats().count),
            key=lambda a: a.code,
        )

    def stats(self, asset: "str | AssetSymbol") -> SeriesStats:
        symbol, ts = self._series_for_read(asset)
        if ts is None:
            return SeriesStats(asset=symbol, count=0, first=None, last=None)
        return ts.stats()
