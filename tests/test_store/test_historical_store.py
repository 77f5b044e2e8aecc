"""Tests for HistoricalStore: append ordering, lookups, ranges, reload,
corruption handling, backfill and all-or-nothing appends.

Uses index_interval=4 (see conftest) so multi-block seeks are exercised
with a few dozen records.
"""

import threading
import time
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from rates.assets import PIVOT
from rates.config import StorageSettings
from rates.exceptions import (
    AppendTimeout,
    CorruptStore,
    DuplicateTimestamp,
    InvalidQuote,
    NotFound,
    OutOfOrder,
    PivotNotStorable,
)
from rates.models import PriceRecord
from rates.store import HistoricalStore

BASE = date(2024, 1, 1)


def _every_other_day(count: int) -> list[date]:
    return [BASE + timedelta(days=2 * i) for i in range(count)]


@pytest.fixture
def filled_store(store: HistoricalStore, make_record) -> HistoricalStore:
    """EUR with 30 records on every other day from 2024-01-01."""
    for i, day in enumerate(_every_other_day(30)):
        store.append(make_record("EUR", day, f"0.9{i:02d}"))
    return store


class TestAppend:
    def test_append_then_latest(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", BASE, "0.90"))
        latest = store.get_latest("EUR")
        assert latest.timestamp == BASE
        assert latest.rate == Decimal("0.9000000000")
        assert latest.source == "test"

    def test_series_created_lazily(self, store: HistoricalStore, make_record) -> None:
        assert store.assets() == []
        assert not (store.data_dir / "EUR.jsonl").exists()
        store.append(make_record("EUR", BASE, "0.90"))
        assert [a.code for a in store.assets()] == ["EUR"]
        assert (store.data_dir / "EUR.jsonl").exists()

    def test_pivot_at_one_is_ignored(self, store: HistoricalStore) -> None:
        store.append(PriceRecord(PIVOT, BASE, Decimal("1.00"), "test"))
        store.append(PriceRecord(PIVOT, BASE, Decimal("1"), "test"), backfill=True)
        assert store.assets() == []
        assert not (store.data_dir / "USD.jsonl").exists()

    @pytest.mark.parametrize("rate", ["2", "0.9999999999"])
    def test_pivot_at_other_rates_rejected(self, store: HistoricalStore, rate: str) -> None:
        with pytest.raises(PivotNotStorable):
            store.append(PriceRecord(PIVOT, BASE, Decimal(rate), "test"))
        assert not (store.data_dir / "USD.jsonl").exists()

    def test_older_record_is_out_of_order(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", BASE + timedelta(days=1), "0.90"))
        with pytest.raises(OutOfOrder) as exc_info:
            store.append(make_record("EUR", BASE, "0.91"))
        assert not isinstance(exc_info.value, DuplicateTimestamp)

    def test_same_day_is_duplicate_and_leaves_series_unchanged(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        before = list(filled_store.get_range("EUR", date.min, date.max))
        size_before = (filled_store.data_dir / "EUR.jsonl").stat().st_size

        with pytest.raises(DuplicateTimestamp):
            filled_store.append(make_record("EUR", before[-1].timestamp, "1.5"))
        with pytest.raises(DuplicateTimestamp):
            filled_store.append(make_record("EUR", before[3].timestamp, "1.5"))

        assert list(filled_store.get_range("EUR", date.min, date.max)) == before
        assert (filled_store.data_dir / "EUR.jsonl").stat().st_size == size_before

    def test_assets_are_independent(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", BASE + timedelta(days=5), "0.90"))
        # an older BTC record is fine: ordering is per asset
        store.append(make_record("BTC", BASE, "42000"))
        assert store.get_latest("BTC").timestamp == BASE

    def test_rate_with_too_many_places_rejected(self, store: HistoricalStore, make_record) -> None:
        record = make_record("EUR", BASE, "0.9")
        too_precise = PriceRecord(
            asset=record.asset, timestamp=BASE, rate=Decimal("0.123456789012"), source="x"
        )
        with pytest.raises(InvalidQuote):
            store.append(too_precise)

    def test_non_positive_rate_rejected(self, store: HistoricalStore, make_record) -> None:
        record = make_record("EUR", BASE, "0.9")
        with pytest.raises(InvalidQuote):
            store.append(PriceRecord(record.asset, BASE, Decimal("0"), "x"))

    def test_requires_load(self, storage_settings: StorageSettings, make_record) -> None:
        unloaded = HistoricalStore(storage_settings)
        with pytest.raises(RuntimeError):
            unloaded.append(make_record("EUR", BASE, "0.9"))
        with pytest.raises(RuntimeError):
            unloaded.get_latest("EUR")


class TestLookups:
    def test_get_at_exact_and_missing(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", date(2024, 1, 1), "0.90"))
        assert store.get_at("EUR", date(2024, 1, 1)).rate == Decimal("0.9000000000")
        with pytest.raises(NotFound):
            store.get_at("EUR", date(2024, 1, 2))

    def test_get_as_of_returns_prior_record(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", date(2024, 1, 1), "0.90"))
        record = store.get_as_of("EUR", date(2024, 1, 2))
        assert record.timestamp == date(2024, 1, 1)

    def test_get_as_of_before_first_is_not_found(
        self, filled_store: HistoricalStore
    ) -> None:
        with pytest.raises(NotFound):
            filled_store.get_as_of("EUR", BASE - timedelta(days=1))

    def test_lookups_across_blocks(self, filled_store: HistoricalStore) -> None:
        days = _every_other_day(30)
        for i, day in enumerate(days):
            assert filled_store.get_at("EUR", day).rate == Decimal(f"0.9{i:02d}").quantize(
                Decimal("1E-10")
            )
            # the gap day after each record resolves to that record
            assert filled_store.get_as_of("EUR", day + timedelta(days=1)).timestamp == day
            with pytest.raises(NotFound):
                filled_store.get_at("EUR", day + timedelta(days=1))

    def test_unknown_series_not_found(self, store: HistoricalStore) -> None:
        with pytest.raises(NotFound):
            store.get_latest("BTC")
        with pytest.raises(NotFound):
            store.get_at("BTC", BASE)
        with pytest.raises(NotFound):
            store.get_as_of("BTC", BASE)

    def test_codes_are_case_insensitive(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", BASE, "0.90"))
        assert store.get_latest("eur").asset.code == "EUR"

    def test_stats(self, filled_store: HistoricalStore) -> None:
        stats = filled_store.stats("EUR")
        assert stats.count == 30
        assert stats.first == BASE
        assert stats.last == _every_other_day(30)[-1]
        assert filled_store.stats("BTC").count == 0


class TestRange:
    @pytest.mark.parametrize(
        "start,end",
        [
            (date(2023, 1, 1), date(2025, 1, 1)),  # everything
            (date(2024, 1, 1), date(2024, 1, 1)),  # single first
            (date(2024, 1, 2), date(2024, 1, 2)),  # gap day
            (date(2024, 1, 4), date(2024, 1, 20)),  # starts in a gap
            (date(2024, 1, 9), date(2024, 1, 17)),  # starts on a sample
            (date(2024, 2, 20), date(2024, 3, 30)),  # tail
            (date(2024, 2, 28), date(2024, 2, 28)),  # last record
            (date(2024, 3, 1), date(2024, 4, 1)),  # after last
            (date(2023, 1, 1), date(2023, 12, 31)),  # before first
        ],
    )
    def test_range_is_exact_and_sorted(
        self, filled_store: HistoricalStore, start: date, end: date
    ) -> None:
        everything = list(filled_store.get_range("EUR", date.min, date.max))
        expected = [r for r in everything if start <= r.timestamp <= end]
        assert list(filled_store.get_range("EUR", start, end)) == expected

    def test_full_range_ascending(self, filled_store: HistoricalStore) -> None:
        records = list(filled_store.get_range("EUR", date.min, date.max))
        assert [r.timestamp for r in records] == _every_other_day(30)

    def test_inverted_range_is_empty(self, filled_store: HistoricalStore) -> None:
        assert list(filled_store.get_range("EUR", date(2024, 2, 1), date(2024, 1, 1))) == []

    def test_missing_series_range_is_empty(self, store: HistoricalStore) -> None:
        assert list(store.get_range("BTC", date.min, date.max)) == []

    def test_range_is_restartable(self, filled_store: HistoricalStore) -> None:
        records = filled_store.get_range("EUR", date(2024, 1, 5), date(2024, 1, 25))
        first = list(records)
        assert first
        assert list(records) == first

    def test_range_is_pinned_to_creation_snapshot(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        records = filled_store.get_range("EUR", date.min, date.max)
        filled_store.append(make_record("EUR", date(2024, 6, 1), "0.95"))
        assert len(list(records)) == 30
        assert len(list(filled_store.get_range("EUR", date.min, date.max))) == 31

    def test_range_is_lazy(self, filled_store: HistoricalStore) -> None:
        iterator = iter(filled_store.get_range("EUR", date.min, date.max))
        assert next(iterator).timestamp == BASE


class TestReload:
    def test_round_trip(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings, make_record
    ) -> None:
        filled_store.append(make_record("BTC", BASE, "42000.5"))
        reloaded = HistoricalStore(storage_settings)
        reloaded.load()
        for code in ("EUR", "BTC"):
            assert list(reloaded.get_range(code, date.min, date.max)) == list(
                filled_store.get_range(code, date.min, date.max)
            )
        assert reloaded.get_latest("EUR") == filled_store.get_latest("EUR")

    def test_index_file_rebuilt_when_missing(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings
    ) -> None:
        index_path = filled_store.data_dir / "EUR.idx.json"
        assert index_path.exists()
        original = index_path.read_text()
        index_path.unlink()

        reloaded = HistoricalStore(storage_settings)
        reloaded.load()
        assert index_path.read_text() == original

    def test_stale_index_file_is_rebuilt_not_fatal(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings
    ) -> None:
        index_path = filled_store.data_dir / "EUR.idx.json"
        original = index_path.read_text()
        index_path.write_text('{"interval": 4, "size": 1, "count": 1, "entries": []}')

        reloaded = HistoricalStore(storage_settings)
        reloaded.load()
        assert index_path.read_text() == original
        assert reloaded.stats("EUR").count == 30

    def test_appends_continue_after_reload(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings, make_record
    ) -> None:
        reloaded = HistoricalStore(storage_settings)
        reloaded.load()
        with pytest.raises(OutOfOrder):
            reloaded.append(make_record("EUR", BASE, "0.9"))
        reloaded.append(make_record("EUR", date(2024, 6, 1), "0.95"))
        assert reloaded.get_latest("EUR").timestamp == date(2024, 6, 1)

    def test_leftover_temp_file_removed(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings
    ) -> None:
        tmp = filled_store.data_dir / "EUR.jsonl.tmp"
        tmp.write_text("half written")
        HistoricalStore(storage_settings).load()
        assert not tmp.exists()


class TestCorruption:
    def _load(self, storage_settings: StorageSettings) -> None:
        HistoricalStore(storage_settings).load()

    def _write(self, storage_settings: StorageSettings, name: str, text: str) -> None:
        data_dir = Path(storage_settings.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        (data_dir / name).write_text(text)

    def test_malformed_line_is_fatal(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings
    ) -> None:
        path = filled_store.data_dir / "EUR.jsonl"
        lines = path.read_text().splitlines(keepends=True)
        lines[10] = "this is not json\n"
        path.write_text("".join(lines))
        with pytest.raises(CorruptStore, match="line 11"):
            self._load(storage_settings)

    def test_truncated_last_line_is_fatal(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings
    ) -> None:
        path = filled_store.data_dir / "EUR.jsonl"
        path.write_bytes(path.read_bytes()[:-5])
        with pytest.raises(CorruptStore):
            self._load(storage_settings)

    def test_unordered_lines_are_fatal(self, storage_settings: StorageSettings) -> None:
        self._write(
            storage_settings,
            "EUR.jsonl",
            '{"asset_code":"EUR","iso_date":"2024-01-02","rate":"0.9000000000","source":"t"}\n'
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"0.9000000000","source":"t"}\n',
        )
        with pytest.raises(CorruptStore):
            self._load(storage_settings)

    def test_duplicate_dates_are_fatal(self, storage_settings: StorageSettings) -> None:
        line = '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"0.9000000000","source":"t"}\n'
        self._write(storage_settings, "EUR.jsonl", line + line)
        with pytest.raises(CorruptStore):
            self._load(storage_settings)

    @pytest.mark.parametrize(
        "line",
        [
            '{"asset_code":"GBP","iso_date":"2024-01-01","rate":"0.9000000000","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-13-01","rate":"0.9000000000","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"abc","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"-1","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"NaN","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"0.9000000000"}\n',
            '["EUR","2024-01-01","0.9000000000","t"]\n',
            # numbers, short or long scales and compact dates are not how rows are written
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":0.9,"source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"0.9","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"0.90000000001","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"2024-01-01","rate":"9.000000000E-1","source":"t"}\n',
            '{"asset_code":"EUR","iso_date":"20240101","rate":"0.9000000000","source":"t"}\n',
        ],
    )
    def test_invalid_rows_are_fatal(self, storage_settings: StorageSettings, line: str) -> None:
        self._write(storage_settings, "EUR.jsonl", line)
        with pytest.raises(CorruptStore):
            self._load(storage_settings)

    def test_unknown_asset_file_is_fatal(self, storage_settings: StorageSettings) -> None:
        self._write(storage_settings, "FOO.jsonl", "")
        with pytest.raises(CorruptStore):
            self._load(storage_settings)

    def test_pivot_file_is_fatal(self, storage_settings: StorageSettings) -> None:
        self._write(storage_settings, "USD.jsonl", "")
        with pytest.raises(CorruptStore):
            self._load(storage_settings)

    def test_corrupt_store_stays_unusable(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings
    ) -> None:
        (filled_store.data_dir / "EUR.jsonl").write_text("garbage\n")
        broken = HistoricalStore(storage_settings)
        with pytest.raises(CorruptStore):
            broken.load()
        with pytest.raises(RuntimeError):
            broken.get_latest("EUR")


class TestBackfill:
    def test_backfill_into_gap(self, filled_store: HistoricalStore, make_record) -> None:
        gap = BASE + timedelta(days=5)
        filled_store.append(make_record("EUR", gap, "0.5"), backfill=True)

        assert filled_store.get_at("EUR", gap).rate == Decimal("0.5000000000")
        days = [r.timestamp for r in filled_store.get_range("EUR", date.min, date.max)]
        assert days == sorted(_every_other_day(30) + [gap])
        assert filled_store.stats("EUR").count == 31

    def test_backfill_before_first(self, filled_store: HistoricalStore, make_record) -> None:
        early = BASE - timedelta(days=10)
        filled_store.append(make_record("EUR", early, "0.8"), backfill=True)
        assert filled_store.stats("EUR").first == early
        assert next(iter(filled_store.get_range("EUR", date.min, date.max))).timestamp == early

    def test_backfill_rejects_existing_day(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        before = list(filled_store.get_range("EUR", date.min, date.max))
        with pytest.raises(DuplicateTimestamp):
            filled_store.append(make_record("EUR", BASE + timedelta(days=4), "9"), backfill=True)
        assert list(filled_store.get_range("EUR", date.min, date.max)) == before

    def test_backfill_after_latest_is_plain_append(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        later = date(2024, 6, 1)
        filled_store.append(make_record("EUR", later, "0.95"), backfill=True)
        assert filled_store.get_latest("EUR").timestamp == later

    def test_backfill_survives_reload(
        self, filled_store: HistoricalStore, storage_settings: StorageSettings, make_record
    ) -> None:
        filled_store.append(make_record("EUR", BASE + timedelta(days=1), "0.5"), backfill=True)
        reloaded = HistoricalStore(storage_settings)
        reloaded.load()
        assert list(reloaded.get_range("EUR", date.min, date.max)) == list(
            filled_store.get_range("EUR", date.min, date.max)
        )

    def test_range_created_before_backfill_still_iterates(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        records = filled_store.get_range("EUR", date.min, date.max)
        filled_store.append(make_record("EUR", BASE + timedelta(days=1), "0.5"), backfill=True)
        days = [r.timestamp for r in records]
        assert days == sorted(days)
        assert len(days) == 31

    def test_range_created_before_many_backfills_reads_one_version(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        records = filled_store.get_range("EUR", date.min, date.max)
        for i in range(15):
            gap = BASE + timedelta(days=2 * i + 1)
            filled_store.append(make_record("EUR", gap, f"0.5{i:02d}"), backfill=True)

        seen = list(records)

        assert seen == list(filled_store.get_range("EUR", date.min, date.max))
        assert len(seen) == 45
        assert [r.timestamp for r in seen] == sorted({r.timestamp for r in seen})

    def test_readers_never_fail_during_backfills(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        gaps = [BASE + timedelta(days=2 * i + 1) for i in range(29)]
        originals = {r.timestamp: r for r in filled_store.get_range("EUR", date.min, date.max)}
        errors: list[str] = []
        done = threading.Event()

        def writer() -> None:
            try:
                for i, gap in enumerate(gaps):
                    filled_store.append(make_record("EUR", gap, f"0.5{i:02d}"), backfill=True)
            finally:
                done.set()

        def reader() -> None:
            while not done.is_set():
                try:
                    seen = list(filled_store.get_range("EUR", date.min, date.max))
                    for day, record in originals.items():
                        if filled_store.get_as_of("EUR", day) != record:
                            errors.append(f"as_of {day} returned another record")
                except Exception as e:
                    errors.append(repr(e))
                    return
                days = [r.timestamp for r in seen]
                if days != sorted(set(days)) or not set(originals) <= set(days):
                    errors.append(f"mixed read of {len(seen)} records")

        threads = [threading.Thread(target=writer)] + [
            threading.Thread(target=reader) for _ in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert filled_store.stats("EUR").count == 59

    def test_backfill_into_empty_series(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("XAU", BASE, "2050.25"), backfill=True)
        assert store.get_latest("XAU").rate == Decimal("2050.250000")


class TestDeadline:
    def test_expired_append_publishes_nothing(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        path = filled_store.data_dir / "EUR.jsonl"
        size_before = path.stat().st_size
        latest_before = filled_store.get_latest("EUR")

        with pytest.raises(AppendTimeout):
            filled_store.append(
                make_record("EUR", date(2024, 6, 1), "0.95"),
                deadline=time.monotonic() - 1,
            )

        assert path.stat().st_size == size_before
        assert filled_store.get_latest("EUR") == latest_before
        # the slot is still free
        filled_store.append(make_record("EUR", date(2024, 6, 1), "0.95"))

    def test_expired_backfill_publishes_nothing(
        self, filled_store: HistoricalStore, make_record
    ) -> None:
        before = list(filled_store.get_range("EUR", date.min, date.max))
        with pytest.raises(AppendTimeout):
            filled_store.append(
                make_record("EUR", BASE + timedelta(days=1), "0.5"),
                backfill=True,
                deadline=time.monotonic() - 1,
            )
        assert list(filled_store.get_range("EUR", date.min, date.max)) == before
        assert not (filled_store.data_dir / "EUR.jsonl.tmp").exists()

    def test_future_deadline_succeeds(self, store: HistoricalStore, make_record) -> None:
        store.append(make_record("EUR", BASE, "0.9"), deadline=time.monotonic() + 60)
        assert store.get_latest("EUR").timestamp == BASE


def test_readers_see_consistent_prefixes(store: HistoricalStore, make_record) -> None:
    """One writer appends while readers scan; every read is a complete prefix."""
    days = [BASE + timedelta(days=i) for i in range(120)]
    records = [make_record("ETH", d, f"{2000 + i}") for i, d in enumerate(days)]
    store.append(records[0])
    errors: list[str] = []
    done = threading.Event()

    def writer() -> None:
        for record in records[1:]:
            store.append(record)
        done.set()

    def reader() -> None:
        while not done.is_set():
            seen = list(store.get_range("ETH", date.min, date.max))
            if seen != records[: len(seen)]:
                errors.append(f"inconsistent read of {len(seen)} records")
            latest = store.get_latest("ETH")
            if latest not in records:
                errors.append("unknown latest record")

    threads = [threading.Thread(target=writer)] + [
        threading.Thread(target=reader) for _ in range(3)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert list(store.get_range("ETH", date.min, date.max)) == records
