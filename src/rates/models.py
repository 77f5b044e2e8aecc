"""Shared data models for the rate store.

CRITICAL: All rates and amounts use Decimal. Never use float for money.
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from enum import Enum

from rates.assets import AssetSymbol, get_asset
from rates.exceptions import InvalidQuote


class Latest(str, Enum):
    """Marker for "most recent available rate" in conversion requests."""

    LATEST = "latest"


LATEST = Latest.LATEST


class QuoteConvention(str, Enum):
    """How a provider expresses a rate relative to the pivot."""

    PIVOT_PER_ASSET = "pivot_per_asset"  # BTC = 60000 (USD per BTC)
    ASSET_PER_PIVOT = "asset_per_pivot"  # EUR = 0.92 (EUR per USD)


# Largest accepted amount is just under 10**MAX_AMOUNT_DIGITS. Cross rates
# can scale an amount by ~10**20, which still fits the 50-digit context used
# for conversion.
MAX_AMOUNT_DIGITS = 24


def quantize(value: Decimal, places: int) -> Decimal:
    """Round value half-up to a fixed number of fractional digits.

    Raises InvalidQuote when the rounded value has more digits than the
    current decimal context allows.
    """
    try:
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidQuote(f"{value} does not fit at {places} decimal places") from None


@dataclass(frozen=True)
class PriceRecord:
    """One daily rate: units of pivot per one unit of asset."""

    asset: AssetSymbol
    timestamp: date
    rate: Decimal
    source: str

    def to_row(self) -> dict:
        """Persisted representation, rate kept as a decimal string."""
        return {
            "asset_code": self.asset.code,
            "iso_date": self.timestamp.isoformat(),
            "rate": f"{self.rate:f}",
            "source": self.source,
        }


@dataclass(frozen=True)
class RawQuote:
    """A provider quote before normalization."""

    value: object
    convention: QuoteConvention = QuoteConvention.PIVOT_PER_ASSET
    source: str = "unknown"


@dataclass(frozen=True)
class ConversionRequest:
    """Convert amount of from_asset into to_asset at a date or LATEST."""

    from_asset: AssetSymbol
    to_asset: AssetSymbol
    amount: Decimal
    at: date | Latest = LATEST
    max_staleness: timedelta | None = None

    @classmethod
    def create(
        cls,
        from_asset: "str | AssetSymbol",
        to_asset: "str | AssetSymbol",
        amount: "Decimal | str | int",
        at: "date | Latest | str" = LATEST,
        max_staleness: timedelta | None = None,
    ) -> "ConversionRequest":
        """Build a request from loosely typed input (codes, strings)."""
        try:
            parsed_amount = Decimal(str(amount).strip())
        except InvalidOperation:
            raise InvalidQuote(f"unparseable amount: {amount!r}") from None
        if not parsed_amount.is_finite():
            raise InvalidQuote(f"amount must be finite: {amount!r}")
        if parsed_amount and parsed_amount.adjusted() >= MAX_AMOUNT_DIGITS:
            raise InvalidQuote(f"amount must be below 1E+{MAX_AMOUNT_DIGITS}: {amount!r}")
        return cls(
            from_asset=get_asset(from_asset),
            to_asset=get_asset(to_asset),
            amount=parsed_amount,
            at=parse_at(at),
            max_staleness=max_staleness,
        )


def parse_at(value: "date | Latest | str") -> date | Latest:
    """Parse an ISO date or the literal "latest"."""
    if isinstance(value, (date, Latest)):
        return value
    text = str(value).strip().lower()
    if text == LATEST.value:
        return LATEST
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise InvalidQuote(f"expected ISO date or 'latest', got {value!r}") from None


@dataclass(frozen=True)
class Conversion:
    """Result of a conversion with the rates that produced it.

    date_from/date_to are None for a pivot leg (rate is exactly 1).
    """

    request: ConversionRequest
    amount: Decimal
    rate_from: Decimal
    rate_to: Decimal
    date_from: date | None
    date_to: date | None


# ──────────────────────────────────────────────
# Money strings: "<CODE> <AMOUNT>", comma thousands, dot fraction
# ──────────────────────────────────────────────

_MONEY_RE = re.compile(r"^([A-Za-z]{3})\s+((?:\d{1,3}(?:,\d{3})*|\d+)(?:\.\d+)?)$")


def parse_money(text: str) -> tuple[AssetSymbol, Decimal]:
    """Parse "USD 1,000.50" into (USD, Decimal("1000.50")).

    Raises InvalidQuote for malformed input, UnknownAsset for unknown codes.
    """
    match = _MONEY_RE.match(text.strip())
    if match is None:
        raise InvalidQuote(
            f"money must be '<CODE> <AMOUNT>' with optional comma thousands: {text!r}"
        )
    asset = get_asset(match.group(1))
    return asset, Decimal(match.group(2).replace(",", ""))


def format_money(asset: AssetSymbol, amount: Decimal) -> str:
    """Format an amount at the asset's precision, e.g. "JPY 1,500"."""
    with localcontext() as ctx:
        ctx.prec = 80
        rounded = quantize(amount, asset.precision)
    return f"{asset.code} {rounded:,}"
