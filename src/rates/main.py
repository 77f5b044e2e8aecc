"""Entry point for the rate store service.

Wires all components together and serves the query API with the
ingestion loop running in the same asyncio event loop (uvicorn's
programmatic API plus FastAPI's lifespan context manager).

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. HistoricalStore (loaded from disk; CorruptStore aborts startup)
4. ConversionEngine
5. Quote providers (Open Exchange Rates, ccxt)
6. Normalizer
7. IngestionScheduler
"""

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from rates.config import AppSettings
from rates.conversion import ConversionEngine
from rates.exceptions import CorruptStore
from rates.ingestion import IngestionScheduler
from rates.logging import get_logger, setup_logging
from rates.normalizer import Normalizer
from rates.providers import CcxtQuoteProvider, OpenExchangeRatesProvider, QuoteProvider
from rates.store import HistoricalStore


def _build_providers(settings: AppSettings) -> list[QuoteProvider]:
    logger = get_logger("rates.main")
    providers: list[QuoteProvider] = []
    if settings.providers.forex_enabled:
        if not settings.providers.oxr_app_id.get_secret_value():
            logger.warning(
                "no_oxr_app_id_configured",
                note="Fiat and metal ingestion disabled. Set PROVIDER_OXR_APP_ID.",
            )
        else:
            providers.append(
                OpenExchangeRatesProvider(
                    app_id=settings.providers.oxr_app_id,
                    base_url=settings.providers.oxr_base_url,
                )
            )
    if settings.providers.crypto_enabled:
        providers.append(CcxtQuoteProvider(settings.providers.crypto_exchange))
    return providers


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Raises CorruptStore if persisted data is damaged; the caller must not
    serve queries in that case.
    """
    store = HistoricalStore(settings.storage)
    store.load()

    engine = ConversionEngine(store, settings.conversion)
    providers = _build_providers(settings)
    scheduler = IngestionScheduler(
        store=store,
        normalizer=Normalizer(),
        providers=providers,
        settings=settings.ingestion,
    )
    return {
        "store": store,
        "engine": engine,
        "providers": providers,
        "scheduler": scheduler,
    }


async def _start_ingestion(components: dict[str, Any], settings: AppSettings) -> None:
    for provider in components["providers"]:
        await provider.connect()
    if settings.ingestion.enabled:
        await components["scheduler"].start()


async def _stop_ingestion(components: dict[str, Any]) -> None:
    await components["scheduler"].stop()
    for provider in components["providers"]:
        await provider.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the ingestion loop with the API and stop it on shutdown."""
    logger = get_logger("rates.main")
    settings = app.state.settings
    components = app.state.components

    await _start_ingestion(components, settings)
    logger.info("lifespan_started", ingestion=settings.ingestion.enabled)

    yield

    await _stop_ingestion(components)
    logger.info("rates_service_stopped")


async def run() -> None:
    """Run the service.

    With the API enabled (API_ENABLED=true, the default) the ingestion loop
    runs inside the uvicorn server's lifespan. Otherwise only the ingestion
    loop runs, until SIGINT/SIGTERM.
    """
    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("rates.main")

    try:
        components = _build_components(settings)
    except CorruptStore as e:
        logger.critical("refusing_to_start_corrupt_store", error=str(e))
        sys.exit(2)

    if settings.api.enabled:
        from rates.api.app import create_app

        app = create_app(components["store"], components["engine"], lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info("starting_with_api", host=settings.api.host, port=settings.api.port)
        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("starting_without_api")
    await _start_ingestion(components, settings)
    try:
        await stop_event.wait()
    finally:
        await _stop_ingestion(components)
        logger.info("rates_service_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
