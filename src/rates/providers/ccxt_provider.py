"""Cryptocurrency quotes via ccxt async.

Prices come from <CODE>/USDT spot markets; USDT is taken at par with the
USD pivot. Quotes are already pivot-per-asset (USD per coin).
"""

from datetime import date, datetime, time, timezone

import ccxt.async_support as ccxt_async
from ccxt.base.errors import BaseError as CcxtError

from rates.assets import AssetClass, AssetSymbol, assets_of_class
from rates.exceptions import ProviderError
from rates.logging import get_logger
from rates.models import QuoteConvention, RawQuote
from rates.providers.base import QuoteProvider

logger = get_logger(__name__)

QUOTE_CURRENCY = "USDT"


class CcxtQuoteProvider(QuoteProvider):
    """Crypto quote provider backed by any ccxt exchange (default Bybit)."""

    def __init__(
        self,
        exchange_id: str = "bybit",
        assets: list[AssetSymbol] | None = None,
        exchange: object | None = None,
    ) -> None:
        self.name = f"ccxt:{exchange_id}"
        self._assets = assets or assets_of_class(AssetClass.CRYPTO)
        if exchange is None:
            try:
                exchange_cls = getattr(ccxt_async, exchange_id)
            except AttributeError:
                raise ValueError(f"unknown ccxt exchange: {exchange_id!r}") from None
            exchange = exchange_cls({"enableRateLimit": True})
        self._exchange = exchange

    @property
    def assets(self) -> list[AssetSymbol]:
        return list(self._assets)

    def _symbol(self, asset: AssetSymbol) -> str:
        return f"{asset.code}/{QUOTE_CURRENCY}"

    async def connect(self) -> None:
        logger.info("connecting_to_exchange", provider=self.name)
        await self._exchange.load_markets()

    async def close(self) -> None:
        """Clean up ccxt async resources. Must be called to avoid leaked sessions."""
        await self._exchange.close()
        logger.info("exchange_connection_closed", provider=self.name)

    async def fetch_latest(self) -> dict[str, RawQuote]:
        symbols = [self._symbol(a) for a in self._assets]
        try:
            tickers = await self._exchange.fetch_tickers(symbols)
        except CcxtError as e:
            raise ProviderError(f"{self.name} fetch_tickers failed: {e}") from e

        quotes: dict[str, RawQuote] = {}
        for asset in self._assets:
            ticker = tickers.get(self._symbol(asset))
            if not ticker or ticker.get("last") is None:
                logger.warning("ticker_missing", provider=self.name, asset=asset.code)
                continue
            quotes[asset.code] = RawQuote(
                value=ticker["last"],
                convention=QuoteConvention.PIVOT_PER_ASSET,
                source=self.name,
            )
        return quotes

    async def fetch_historical(self, day: date) -> dict[str, RawQuote]:
        """Daily candle close for each asset on `day` (UTC)."""
        since_ms = int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp() * 1000)
        quotes: dict[str, RawQuote] = {}
        for asset in self._assets:
            try:
                candles = await self._exchange.fetch_ohlcv(
                    self._symbol(asset), timeframe="1d", since=since_ms, limit=1
                )
            except CcxtError as e:
                raise ProviderError(
                    f"{self.name} fetch_ohlcv {asset.code} {day} failed: {e}"
                ) from e
            # [timestamp_ms, open, high, low, close, volume]
            if not candles or candles[0][0] != since_ms:
                logger.warning("candle_missing", provider=self.name, asset=asset.code, day=str(day))
                continue
            quotes[asset.code] = RawQuote(
                value=candles[0][4],
                convention=QuoteConvention.PIVOT_PER_ASSET,
                source=self.name,
            )
        return quotes
