"""Exceptions for the rate store and conversion engine.

Every error the core raises lives here so the store, normalizer, engine
and API layer can share one taxonomy without circular imports.
"""


class RatesError(Exception):
    """Base exception for all rate store errors."""


class UnknownAsset(RatesError):
    """Raised when an asset code is not in the registry."""


class InvalidQuote(RatesError):
    """Raised when a raw quote is non-positive, non-finite or unparseable."""


class AppendError(RatesError):
    """Base class for append-time rejections."""


class OutOfOrder(AppendError):
    """Raised when a record is not newer than the latest stored record."""


class DuplicateTimestamp(OutOfOrder):
    """Raised when a record's day is already present in the series."""


class PivotNotStorable(AppendError):
    """Raised when a record for the pivot currency is appended."""


class AppendTimeout(AppendError):
    """Raised when an append misses its deadline and is rolled back."""


class NotFound(RatesError):
    """Raised when no record exists for the requested asset and date."""


class ConversionError(RatesError):
    """Base class for conversion-time failures."""


class MissingRate(ConversionError):
    """Raised when a non-pivot leg has no usable rate."""


class StaleRate(ConversionError):
    """Raised when the resolved rate is older than the allowed staleness."""


class CorruptStore(RatesError):
    """Raised when persisted data cannot be read back exactly.

    Fatal: the store refuses to load and the process must not serve queries
    until the data directory is repaired by hand.
    """


class ProviderError(RatesError):
    """Raised when a quote provider fails to deliver a usable payload."""
