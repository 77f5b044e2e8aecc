"""Abstract quote provider interface.

The ingestion loop depends only on this interface, keeping exchange and
forex API details isolated in the concrete implementations.
"""

from abc import ABC, abstractmethod
from datetime import date

from rates.assets import AssetSymbol
from rates.models import RawQuote


class QuoteProvider(ABC):
    """Abstract base class for rate sources."""

    name: str = "provider"

    @property
    @abstractmethod
    def assets(self) -> list[AssetSymbol]:
        """Assets this provider quotes."""
        ...

    async def connect(self) -> None:
        """Initialize connections. Default: nothing to do."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""

    @abstractmethod
    async def fetch_latest(self) -> dict[str, RawQuote]:
        """Current quotes keyed by asset code."""
        ...

    @abstractmethod
    async def fetch_historical(self, day: date) -> dict[str, RawQuote]:
        """End-of-day quotes for a past day keyed by asset code."""
        ...
