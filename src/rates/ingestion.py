"""Periodic ingestion: provider fetch -> normalize -> store append.

One scheduler instance is the single writer for every asset it ingests.
Each provider fetch runs under a timeout, and the same time limit is handed to
the store as an append deadline so a slow cycle never publishes a record
after it has been given up on.

Retries are not attempted inside a cycle: a failed provider is logged and
picked up again on the next tick.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

import structlog

from rates.config import IngestionSettings
from rates.exceptions import AppendTimeout, OutOfOrder, ProviderError
from rates.logging import get_logger
from rates.models import RawQuote
from rates.normalizer import Normalizer
from rates.providers.base import QuoteProvider
from rates.store import HistoricalStore

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IngestionReport:
    """Counts for one ingestion or backfill run."""

    appended: int = 0
    skipped: int = 0  # day already stored
    rejected: int = 0  # invalid quotes
    failed_providers: list[str] = field(default_factory=list)

    def merge(self, other: "IngestionReport") -> None:
        self.appended += other.appended
        self.skipped += other.skipped
        self.rejected += other.rejected
        self.failed_providers.extend(other.failed_providers)


class IngestionScheduler:
    """Runs ingestion cycles on a fixed interval in a background task."""

    def __init__(
        self,
        store: HistoricalStore,
        normalizer: Normalizer,
        providers: Sequence[QuoteProvider],
        settings: IngestionSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._providers = list(providers)
        self._settings = settings
        self._clock = clock
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Begin periodic ingestion in the background."""
        if self._running:
            logger.warning("ingestion_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "ingestion_started",
            interval_seconds=self._settings.interval_seconds,
            providers=[p.name for p in self._providers],
        )

    async def stop(self) -> None:
        """Stop the loop. An append already in progress completes or rolls back."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ingestion_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.ingest_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("ingestion_cycle_error")
            if self._running:
                await asyncio.sleep(self._settings.interval_seconds)

    async def ingest_once(self) -> IngestionReport:
        """Fetch current quotes from every provider and append today's records."""
        observed_at = self._clock()
        report = IngestionReport()
        for provider in self._providers:
            report.merge(
                await self._ingest(provider, provider.fetch_latest, observed_at, backfill=False)
            )
        logger.info(
            "ingestion_cycle_complete",
            day=observed_at.date().isoformat(),
            appended=report.appended,
            skipped=report.skipped,
            rejected=report.rejected,
            failed_providers=report.failed_providers,
        )
        return report

    async def backfill(self, start: date, end: date) -> IngestionReport:
        """Fill historical days [start, end] from providers' historical endpoints.

        Days already stored are skipped; nothing is overwritten.
        """
        if start > end:
            raise ValueError(f"backfill start {start} is after end {end}")
        report = IngestionReport()
        day = start
        while day <= end:
            for provider in self._providers:

                async def fetch(p: QuoteProvider = provider, d: date = day) -> dict[str, RawQuote]:
                    return await p.fetch_historical(d)

                report.merge(await self._ingest(provider, fetch, day, backfill=True))
            day += timedelta(days=1)
        logger.info(
            "backfill_complete",
            start=start.isoformat(),
            end=end.isoformat(),
            appended=report.appended,
            skipped=report.skipped,
            rejected=report.rejected,
            failed_providers=report.failed_providers,
        )
        return report

    async def _ingest(
        self,
        provider: QuoteProvider,
        fetch: Callable[[], Awaitable[dict[str, RawQuote]]],
        observed_at: datetime | date,
        backfill: bool,
    ) -> IngestionReport:
        report = IngestionReport()
        timeout = self._settings.timeout_seconds
        deadline = time.monotonic() + timeout

        with structlog.contextvars.bound_contextvars(provider=provider.name, backfill=backfill):
            try:
                quotes = await asyncio.wait_for(fetch(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("provider_fetch_timeout", timeout_seconds=timeout)
                report.failed_providers.append(provider.name)
                return report
            except ProviderError as e:
                logger.warning("provider_fetch_failed", error=str(e))
                report.failed_providers.append(provider.name)
                return report

            records, rejected = self._normalizer.normalize_many(quotes, observed_at)
            report.rejected += len(rejected)

            for record in records:
                try:
                    self._store.append(record, backfill=backfill, deadline=deadline)
                except OutOfOrder:
                    # includes DuplicateTimestamp: today's record is already in
                    report.skipped += 1
                    continue
                except AppendTimeout:
                    logger.warning(
                        "append_deadline_exceeded",
                        asset=record.asset.code,
                        remaining=len(records) - report.appended - report.skipped,
                    )
                    report.failed_providers.append(provider.name)
                    break
                report.appended += 1

        return report
