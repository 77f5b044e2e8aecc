"""JSON query endpoints over the historical store and conversion engine.

Handlers are plain (sync) functions: FastAPI runs them in its threadpool,
and store reads never block on the ingestion writer.
"""

from datetime import date, timedelta
from decimal import Decimal

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from rates.assets import PIVOT, get_asset
from rates.models import ConversionRequest, Latest, PriceRecord, format_money, parse_at

router = APIRouter()


def _decimal_to_str(value: Decimal | None) -> str | None:
    """Plain positional notation, never exponent form."""
    return None if value is None else f"{value:f}"


def _record_to_dict(record: PriceRecord) -> dict:
    return {
        "asset": record.asset.code,
        "asset_class": record.asset.asset_class.value,
        "date": record.timestamp.isoformat(),
        "rate": _decimal_to_str(record.rate),
        "source": record.source,
    }


@router.get("/ping")
def ping() -> JSONResponse:
    return JSONResponse(content={"status": "ok"})


@router.get("/rates/assets")
def list_assets(request: Request) -> JSONResponse:
    """Stored series with their record count and date span."""
    store = request.app.state.store
    series = []
    for symbol in store.assets():
        stats = store.stats(symbol)
        series.append(
            {
                "asset": symbol.code,
                "asset_class": symbol.asset_class.value,
                "precision": symbol.precision,
                "count": stats.count,
                "first": stats.first.isoformat() if stats.first else None,
                "last": stats.last.isoformat() if stats.last else None,
            }
        )
    return JSONResponse(content={"pivot": PIVOT.code, "series": series})


@router.get("/rates/latest")
def get_latest(request: Request, asset: str) -> JSONResponse:
    """Latest stored record for an asset; 404 when the asset has none."""
    record = request.app.state.store.get_latest(asset)
    return JSONResponse(content=_record_to_dict(record))


@router.get("/rates/at")
def get_at(
    request: Request,
    asset: str,
    day: date = Query(alias="date"),
    as_of: bool = False,
) -> JSONResponse:
    """Exact-date record, or with as_of=true the most recent on/before the date."""
    store = request.app.state.store
    record = store.get_as_of(asset, day) if as_of else store.get_at(asset, day)
    return JSONResponse(content=_record_to_dict(record))


@router.get("/rates/history")
def get_history(
    request: Request,
    asset: str,
    start: date = Query(alias="from"),
    end: date = Query(alias="to"),
) -> JSONResponse:
    """Records with from <= date <= to, ascending."""
    symbol = get_asset(asset)
    records = request.app.state.store.get_range(symbol, start, end)
    return JSONResponse(
        content={
            "asset": symbol.code,
            "from": start.isoformat(),
            "to": end.isoformat(),
            "records": [_record_to_dict(r) for r in records],
        }
    )


@router.get("/rates/table")
def get_rates_table(
    request: Request,
    base: str = "USD",
    at: str = "latest",
) -> JSONResponse:
    """Value of one unit of `base` in every asset with a usable rate."""
    symbol = get_asset(base)
    when = parse_at(at)
    table = request.app.state.engine.rates_table(symbol, when)
    return JSONResponse(
        content={
            "base": symbol.code,
            "at": when.value if isinstance(when, Latest) else when.isoformat(),
            "rates": {code: _decimal_to_str(value) for code, value in table.items()},
        }
    )


@router.get("/convert")
def convert(
    request: Request,
    from_asset: str = Query(alias="from"),
    to_asset: str = Query(alias="to"),
    amount: str = Query(),
    at: str = "latest",
    max_staleness_days: int | None = Query(default=None, ge=0),
) -> JSONResponse:
    """Convert an amount between two assets through the pivot currency."""
    conversion_request = ConversionRequest.create(
        from_asset,
        to_asset,
        amount,
        at,
        max_staleness=(
            timedelta(days=max_staleness_days) if max_staleness_days is not None else None
        ),
    )
    result = request.app.state.engine.convert_detailed(conversion_request)
    return JSONResponse(
        content={
            "from": conversion_request.from_asset.code,
            "to": conversion_request.to_asset.code,
            "amount": _decimal_to_str(conversion_request.amount),
            "at": (
                conversion_request.at.value
                if isinstance(conversion_request.at, Latest)
                else conversion_request.at.isoformat()
            ),
            "result": _decimal_to_str(result.amount),
            "formatted": format_money(conversion_request.to_asset, result.amount),
            "rate_from": _decimal_to_str(result.rate_from),
            "rate_to": _decimal_to_str(result.rate_to),
            "date_from": result.date_from.isoformat() if result.date_from else None,
            "date_to": result.date_to.isoformat() if result.date_to else None,
        }
    )
