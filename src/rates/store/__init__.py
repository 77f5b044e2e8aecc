"""Historical rate persistence layer.

Provides the append-only per-asset series, the sparse date index and the
HistoricalStore facade used by the conversion engine, ingestion loop and
query API.
"""

from rates.store.index import SparseIndex
from rates.store.series import RecordRange, SeriesStats, TimeSeries
from rates.store.store import HistoricalStore

__all__ = [
    "HistoricalStore",
    "RecordRange",
    "SeriesStats",
    "SparseIndex",
    "TimeSeries",
]
