"""Shared test fixtures for the rate store."""

from collections.abc import Callable
from datetime import date
from decimal import Decimal

import pytest

from rates.assets import get_asset
from rates.config import ConversionSettings, StorageSettings
from rates.conversion import ConversionEngine
from rates.models import PriceRecord, quantize
from rates.store import HistoricalStore

TODAY = date(2024, 1, 10)


@pytest.fixture
def storage_settings(tmp_path) -> StorageSettings:
    """Store rooted in a temp dir with a small index interval to exercise blocks."""
    return StorageSettings(data_dir=str(tmp_path / "rates"), index_interval=4)


@pytest.fixture
def store(storage_settings: StorageSettings) -> HistoricalStore:
    """Empty, loaded HistoricalStore."""
    s = HistoricalStore(storage_settings)
    s.load()
    return s


@pytest.fixture
def make_record() -> Callable[..., PriceRecord]:
    """Build a PriceRecord with the rate scaled to the asset's rate precision."""

    def _make(code: str, day: date, rate: str, source: str = "test") -> PriceRecord:
        asset = get_asset(code)
        return PriceRecord(
            asset=asset,
            timestamp=day,
            rate=quantize(Decimal(rate), asset.rate_precision),
            source=source,
        )

    return _make


@pytest.fixture
def engine(store: HistoricalStore) -> ConversionEngine:
    """ConversionEngine with no default staleness and a fixed clock."""
    return ConversionEngine(store, ConversionSettings(), clock=lambda: TODAY)
