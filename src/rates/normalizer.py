"""Rate normalizer: raw provider quotes to canonical PriceRecords.

Canonical form is units of pivot (USD) per one unit of asset, rounded
half-up to the asset's rate precision. Providers quote either way round
(crypto exchanges: USD per BTC; forex APIs: EUR per USD), so each quote
carries its convention and is inverted when needed.
"""

from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, localcontext

from rates.assets import AssetSymbol, get_asset, is_pivot
from rates.exceptions import InvalidQuote, UnknownAsset
from rates.logging import get_logger
from rates.models import PriceRecord, QuoteConvention, RawQuote, quantize

logger = get_logger(__name__)


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, bool):
        raise InvalidQuote(f"boolean is not a rate: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)):
        try:
            # str() first so floats keep their shortest repr, not binary noise
            return Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidQuote(f"unparseable rate: {value!r}") from None
    raise InvalidQuote(f"unsupported rate type {type(value).__name__}: {value!r}")


def truncate_to_day(observed_at: datetime | date) -> date:
    """Truncate to the UTC calendar day. Naive datetimes are taken as UTC."""
    if isinstance(observed_at, datetime):
        if observed_at.tzinfo is not None:
            observed_at = observed_at.astimezone(timezone.utc)
        return observed_at.date()
    return observed_at


def normalize(
    raw_quote: "RawQuote | Decimal | str | int | float",
    asset: "AssetSymbol | str",
    observed_at: datetime | date,
) -> PriceRecord:
    """Convert one raw quote into a PriceRecord.

    Raises:
        InvalidQuote: non-positive, non-finite or unparseable value, or a
            quote for the pivot itself.
        UnknownAsset: asset code outside the registry.
    """
    if not isinstance(raw_quote, RawQuote):
        raw_quote = RawQuote(value=raw_quote)
    symbol = get_asset(asset)
    if is_pivot(symbol):
        raise InvalidQuote(f"{symbol.code} is the pivot and is never quoted")

    value = _to_decimal(raw_quote.value)
    if not value.is_finite():
        raise InvalidQuote(f"rate must be finite: {raw_quote.value!r}")
    if value <= 0:
        raise InvalidQuote(f"rate must be positive: {raw_quote.value!r}")

    with localcontext() as ctx:
        ctx.prec = 50
        if raw_quote.convention is QuoteConvention.ASSET_PER_PIVOT:
            value = Decimal(1) / value
        rate = quantize(value, symbol.rate_precision)

    if rate <= 0:
        raise InvalidQuote(
            f"rate {raw_quote.value!r} for {symbol.code} rounds to zero "
            f"at {symbol.rate_precision} places"
        )

    return PriceRecord(
        asset=symbol,
        timestamp=truncate_to_day(observed_at),
        rate=rate,
        source=raw_quote.source,
    )


class Normalizer:
    """Batch front-end over normalize() used by the ingestion loop.

    Invalid entries in a provider payload are logged and skipped so one bad
    quote does not discard the rest of the batch.
    """

    def __init__(self, default_source: str = "unknown") -> None:
        self._default_source = default_source

    def normalize(
        self,
        raw_quote: "RawQuote | Decimal | str | int | float",
        asset: "AssetSymbol | str",
        observed_at: datetime | date,
    ) -> PriceRecord:
        if not isinstance(raw_quote, RawQuote):
            raw_quote = RawQuote(value=raw_quote, source=self._default_source)
        return normalize(raw_quote, asset, observed_at)

    def normalize_many(
        self,
        quotes: Mapping[str, RawQuote],
        observed_at: datetime | date,
    ) -> tuple[list[PriceRecord], list[str]]:
        """Normalize a provider payload.

        Returns (records, rejected_codes). Records are ordered by asset code.
        """
        records: list[PriceRecord] = []
        rejected: list[str] = []
        for code in sorted(quotes):
            try:
                records.append(self.normalize(quotes[code], code, observed_at))
            except (InvalidQuote, UnknownAsset) as e:
                logger.warning("quote_rejected", asset=code, reason=str(e))
                rejected.append(code)
        return records, rejected
