"""Fiat and precious metal quotes from the Open Exchange Rates API.

Rates come USD-based ("1 USD = 0.92 EUR"), i.e. asset-per-pivot, and are
inverted by the normalizer. Metals (XAU, XAG, ...) need show_alternative=1.
Uses urllib.request (stdlib) in a worker thread so the event loop is not
blocked.
"""

import asyncio
import json
import urllib.error
import urllib.request
from datetime import date
from decimal import Decimal

from pydantic import SecretStr

from rates.assets import PIVOT, AssetClass, AssetSymbol, assets_of_class, is_pivot
from rates.exceptions import ProviderError
from rates.logging import get_logger
from rates.models import QuoteConvention, RawQuote
from rates.providers.base import QuoteProvider

logger = get_logger(__name__)


class OpenExchangeRatesProvider(QuoteProvider):
    """Fiat + metal quote provider for openexchangerates.org.

    Args:
        app_id: API key.
        base_url: API root, overridable for testing.
        timeout: Per-request socket timeout in seconds.
    """

    name = "openexchangerates"

    def __init__(
        self,
        app_id: SecretStr,
        base_url: str = "https://openexchangerates.org/api",
        assets: list[AssetSymbol] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._app_id = app_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        if assets is None:
            assets = assets_of_class(AssetClass.FIAT) + assets_of_class(AssetClass.METAL)
        self._assets = [a for a in assets if not is_pivot(a)]

    @property
    def assets(self) -> list[AssetSymbol]:
        return list(self._assets)

    async def fetch_latest(self) -> dict[str, RawQuote]:
        payload = await asyncio.to_thread(self._get, "latest.json")
        return self._parse(payload)

    async def fetch_historical(self, day: date) -> dict[str, RawQuote]:
        payload = await asyncio.to_thread(self._get, f"historical/{day.isoformat()}.json")
        return self._parse(payload)

    def _url(self, path: str) -> str:
        symbols = ",".join(a.code for a in self._assets)
        return (
            f"{self._base_url}/{path}"
            f"?app_id={self._app_id.get_secret_value()}"
            f"&base={PIVOT.code}&symbols={symbols}&show_alternative=1"
        )

    def _get(self, path: str) -> dict:
        headers = {"Accept": "application/json", "User-Agent": "rates/1.0"}
        req = urllib.request.Request(self._url(path), headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                # parse_float keeps the quoted digits exactly
                return json.loads(resp.read(), parse_float=Decimal)
        except urllib.error.HTTPError as e:
            raise ProviderError(f"{self.name} {path}: HTTP {e.code}") from e
        except (urllib.error.URLError, TimeoutError, ValueError) as e:
            raise ProviderError(f"{self.name} {path}: {e}") from e

    def _parse(self, payload: dict) -> dict[str, RawQuote]:
        if payload.get("base", PIVOT.code) != PIVOT.code:
            raise ProviderError(f"{self.name}: unexpected base {payload.get('base')!r}")
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise ProviderError(f"{self.name}: payload has no rates object")

        quotes: dict[str, RawQuote] = {}
        for asset in self._assets:
            raw = rates.get(asset.code)
            if raw is None:
                logger.debug("rate_missing", provider=self.name, asset=asset.code)
                continue
            quotes[asset.code] = RawQuote(
                value=raw,
                convention=QuoteConvention.ASSET_PER_PIVOT,
                source=self.name,
            )
        return quotes
