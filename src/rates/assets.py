"""Asset classes and the static registry of supported symbols.

Every supported asset belongs to exactly one closed AssetClass. The class
decides two precisions:
  - amount precision: fractional digits for converted amounts (overridable
    per symbol for ISO-4217 minor units such as JPY or KWD)
  - rate precision: fractional digits for stored pivot-relative rates

The registry is built once at import time and is read-only afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from rates.exceptions import UnknownAsset


class AssetClass(str, Enum):
    """Closed set of asset classes."""

    FIAT = "fiat"
    METAL = "metal"
    CRYPTO = "crypto"

    @property
    def precision(self) -> int:
        """Default fractional digits for amounts of this class."""
        return _CLASS_PRECISION[self]

    @property
    def rate_precision(self) -> int:
        """Fractional digits for stored pivot-per-asset rates."""
        return _CLASS_RATE_PRECISION[self]


_CLASS_PRECISION: dict[AssetClass, int] = {
    AssetClass.FIAT: 2,
    AssetClass.METAL: 4,  # troy ounces
    AssetClass.CRYPTO: 8,
}

# IDR is ~0.00006 USD and SHIB-like coins go lower still
_CLASS_RATE_PRECISION: dict[AssetClass, int] = {
    AssetClass.FIAT: 10,
    AssetClass.METAL: 6,
    AssetClass.CRYPTO: 12,
}


@dataclass(frozen=True)
class AssetSymbol:
    """A supported asset: stable code, class and amount precision."""

    code: str
    asset_class: AssetClass
    precision: int = field(default=-1, compare=False)

    def __post_init__(self) -> None:
        if self.precision < 0:
            object.__setattr__(self, "precision", self.asset_class.precision)

    @property
    def rate_precision(self) -> int:
        return self.asset_class.rate_precision

    def __str__(self) -> str:
        return self.code


def _build_registry() -> MappingProxyType:
    fiat = [
        # north america
        "USD", "CAD",
        # europe
        "EUR", "GBP", "CHF", "RUB",
        # east asia
        "CNY", "HKD",
        # south-east asia
        "IDR", "MYR", "SGD", "THB",
        # middle east
        "SAR", "AED",
        # south asia, apac
        "INR", "AUD", "NZD",
    ]
    symbols = [AssetSymbol(code, AssetClass.FIAT) for code in fiat]
    # ISO-4217 minor units that differ from the fiat default
    symbols += [
        AssetSymbol("JPY", AssetClass.FIAT, precision=0),
        AssetSymbol("KRW", AssetClass.FIAT, precision=0),
        AssetSymbol("KWD", AssetClass.FIAT, precision=3),
    ]
    symbols += [
        AssetSymbol(code, AssetClass.METAL)
        for code in ("XAU", "XAG", "XPT", "XPD", "XRH")
    ]
    symbols += [
        AssetSymbol(code, AssetClass.CRYPTO)
        for code in ("BTC", "ETH", "SOL", "XRP", "ADA")
    ]
    return MappingProxyType({s.code: s for s in symbols})


ASSETS: MappingProxyType = _build_registry()

PIVOT: AssetSymbol = ASSETS["USD"]


def get_asset(code: "str | AssetSymbol") -> AssetSymbol:
    """Resolve a code (case-insensitive) or pass an AssetSymbol through.

    Raises UnknownAsset for codes outside the registry.
    """
    if isinstance(code, AssetSymbol):
        return code
    try:
        return ASSETS[code.strip().upper()]
    except (KeyError, AttributeError):
        raise UnknownAsset(f"unsupported asset code: {code!r}") from None


def assets_of_class(asset_class: AssetClass) -> list[AssetSymbol]:
    """Return all registered assets of one class, in registry order."""
    return [s for s in ASSETS.values() if s.asset_class is asset_class]


def is_pivot(asset: AssetSymbol) -> bool:
    return asset.code == PIVOT.code
