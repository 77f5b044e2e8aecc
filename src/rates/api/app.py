"""FastAPI application factory for the rate query API."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rates.api import routes
from rates.conversion import ConversionEngine
from rates.exceptions import (
    CorruptStore,
    InvalidQuote,
    MissingRate,
    NotFound,
    RatesError,
    StaleRate,
    UnknownAsset,
)
from rates.logging import get_logger
from rates.store import HistoricalStore

logger = get_logger(__name__)

# First match wins, so subclasses must come before their bases.
_STATUS_BY_ERROR: list[tuple[type[RatesError], int]] = [
    (UnknownAsset, 400),
    (InvalidQuote, 400),
    (NotFound, 404),
    (MissingRate, 404),
    (StaleRate, 409),
    (CorruptStore, 500),
]


async def _rates_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)),
        500,
    )
    if status >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app(
    store: HistoricalStore,
    engine: ConversionEngine,
    lifespan: Any = None,
) -> FastAPI:
    """Create and configure the query API.

    Args:
        store: A loaded HistoricalStore.
        engine: ConversionEngine over the same store.
        lifespan: Optional async context manager for startup/shutdown,
                  used by main.py to run the ingestion loop alongside.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(title="Historical Rates API", lifespan=lifespan)
    app.state.store = store
    app.state.engine = engine
    app.add_exception_handler(RatesError, _rates_error_handler)
    app.include_router(routes.router)
    return app
