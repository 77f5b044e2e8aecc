"""Quote providers feeding the ingestion loop."""

from rates.providers.base import QuoteProvider
from rates.providers.ccxt_provider import CcxtQuoteProvider
from rates.providers.open_exchange import OpenExchangeRatesProvider

__all__ = [
    "CcxtQuoteProvider",
    "OpenExchangeRatesProvider",
    "QuoteProvider",
]
