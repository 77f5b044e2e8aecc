"""Cross-asset conversion by triangulation through the pivot currency.

Every stored rate is pivot-per-asset, so converting X to Y is

    amount * rate(X) / rate(Y)

with rate(pivot) == 1 exactly. The arithmetic runs in a 50-digit decimal
context and the result is rounded half-up to Y's amount precision.
"""

from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, localcontext

from rates.assets import ASSETS, AssetSymbol, get_asset, is_pivot
from rates.config import ConversionSettings
from rates.exceptions import MissingRate, NotFound, StaleRate
from rates.logging import get_logger
from rates.models import LATEST, Conversion, ConversionRequest, Latest, quantize
from rates.store import HistoricalStore

logger = get_logger(__name__)

_ONE = Decimal(1)
_PRECISION = 50


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class ConversionEngine:
    """Converts amounts between any two registered assets.

    Lookups go through the HistoricalStore: exact-date for an explicit date,
    latest for LATEST. When a maximum staleness applies (per request, or the
    configured default) explicit dates fall back to the most recent record
    on or before the date, and any rate older than the limit is refused
    with StaleRate.
    """

    def __init__(
        self,
        store: HistoricalStore,
        settings: ConversionSettings | None = None,
        clock: Callable[[], date] = utc_today,
    ) -> None:
        self._store = store
        settings = settings or ConversionSettings()
        self._default_staleness = (
            timedelta(days=settings.max_staleness_days)
            if settings.max_staleness_days is not None
            else None
        )
        self._clock = clock

    def convert(self, request: ConversionRequest) -> Decimal:
        """Return request.amount expressed in request.to_asset."""
        return self.convert_detailed(request).amount

    def convert_detailed(self, request: ConversionRequest) -> Conversion:
        """Convert and report the rates and dates that were used.

        Raises:
            MissingRate: a non-pivot leg has no record at/before the date.
            StaleRate: a resolved rate is older than the allowed staleness.
            InvalidQuote: the result is too large to round to the target precision.
        """
        if request.from_asset == request.to_asset:
            return Conversion(
                request=request,
                amount=request.amount,
                rate_from=_ONE,
                rate_to=_ONE,
                date_from=None,
                date_to=None,
            )

        max_staleness = (
            request.max_staleness
            if request.max_staleness is not None
            else self._default_staleness
        )
        rate_from, date_from = self._resolve(request.from_asset, request.at, max_staleness)
        rate_to, date_to = self._resolve(request.to_asset, request.at, max_staleness)

        with localcontext() as ctx:
            ctx.prec = _PRECISION
            raw = request.amount * rate_from / rate_to
            amount = quantize(raw, request.to_asset.precision)

        return Conversion(
            request=request,
            amount=amount,
            rate_from=rate_from,
            rate_to=rate_to,
            date_from=date_from,
            date_to=date_to,
        )

    def batch_convert(self, requests: Iterable[ConversionRequest]) -> list[Conversion]:
        """Convert several requests, failing on the first error."""
        return [self.convert_detailed(r) for r in requests]

    def rates_table(
        self,
        base: "str | AssetSymbol",
        at: date | Latest = LATEST,
        max_staleness: timedelta | None = None,
    ) -> dict[str, Decimal]:
        """Price of one unit of `base` in every asset with a usable rate.

        Values are rounded to each target's rate precision. Assets without a
        usable rate are left out rather than failing the whole table.
        """
        base = get_asset(base)
        if max_staleness is None:
            max_staleness = self._default_staleness
        rate_base, _ = self._resolve(base, at, max_staleness)

        table: dict[str, Decimal] = {}
        skipped: list[str] = []
        for target in ASSETS.values():
            if target == base:
                table[target.code] = quantize(_ONE, target.rate_precision)
                continue
            try:
                rate_target, _ = self._resolve(target, at, max_staleness)
            except (MissingRate, StaleRate):
                skipped.append(target.code)
                continue
            with localcontext() as ctx:
                ctx.prec = _PRECISION
                table[target.code] = quantize(rate_base / rate_target, target.rate_precision)

        if skipped:
            logger.debug("rates_table_partial", base=base.code, skipped=skipped)
        return table

    def _resolve(
        self,
        asset: AssetSymbol,
        at: date | Latest,
        max_staleness: timedelta | None,
    ) -> tuple[Decimal, date | None]:
        if is_pivot(asset):
            return _ONE, None

        try:
            if isinstance(at, Latest):
                record = self._store.get_latest(asset)
                reference = self._clock()
            elif max_staleness is None:
                record = self._store.get_at(asset, at)
                reference = at
            else:
                record = self._store.get_as_of(asset, at)
                reference = at
        except NotFound as e:
            raise MissingRate(f"no {asset.code} rate for {_describe(at)}") from e

        if max_staleness is not None:
            age = reference - record.timestamp
            if age > max_staleness:
                raise StaleRate(
                    f"{asset.code} rate from {record.timestamp} is {age.days} days old "
                    f"at {reference} (limit {max_staleness.days})"
                )
        return record.rate, record.timestamp


def _describe(at: date | Latest) -> str:
    return "latest" if isinstance(at, Latest) else at.isoformat()
