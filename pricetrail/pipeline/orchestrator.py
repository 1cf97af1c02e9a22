"""Scraper service - runs one ingestion pipeline per retailer.

Key features:
- Bounded: at most ``concurrency`` retailer pipelines run at once
- Sequential per retailer: fetch, resolve, ingest, record, batch by batch
- Resilient: a failed batch aborts only its own retailer's run
- Auditable: every run is logged to the scrape_logs table
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from pricetrail.config import PipelineConfig
from pricetrail.db.connection import engine_of, get_session, get_session_factory
from pricetrail.db.locks import retailer_lock
from pricetrail.db.models import ProductMappingModel, RetailerModel, ScrapeLogModel
from pricetrail.errors import BatchWriteFailure
from pricetrail.models import utcnow
from pricetrail.pipeline.base_scraper import BaseScraper
from pricetrail.pipeline.ingestor import BatchIngestor
from pricetrail.pipeline.price_recorder import PriceRecorder
from pricetrail.pipeline.types import RunResult, RunStatus

logger = logging.getLogger(__name__)

# Cap on per-listing errors kept in a run log
MAX_LOGGED_ERRORS = 50


async def _batched(source: AsyncIterator[Any], size: int) -> AsyncIterator[list[Any]]:
    batch: list[Any] = []
    async for item in source:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class ScraperService:
    """Orchestrates retailer pipelines under a bounded pool.

    Responsibilities:
    1. Run each retailer's scraper and feed its listings through the ingestor
    2. Record prices only after the batch's ingest transaction committed
    3. Apply the availability policy after a clean run
    4. Log results to scrape_logs for monitoring
    """

    def __init__(
        self,
        scrapers: list[BaseScraper],
        session_factory: sessionmaker | None = None,
        config: PipelineConfig | None = None,
        recorder: PriceRecorder | None = None,
    ):
        """Initialize service with list of scrapers.

        Args:
            scrapers: Configured scraper instances, one per retailer
            session_factory: Session factory for the store (default: global)
            config: Pipeline sizing and policies (default: PipelineConfig())
            recorder: Price recorder (default: PriceRecorder())
        """
        self.scrapers = scrapers
        self.session_factory = session_factory or get_session_factory()
        self.config = config or PipelineConfig()
        self.recorder = recorder or PriceRecorder()
        self.run_timestamp = utcnow()

        if self.config.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.config.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    async def run(self) -> dict:
        """Execute one scrape cycle over all retailers.

        Returns:
            Summary dict with overall status and per-retailer results
        """
        logger.info(
            f"Starting scrape cycle at {self.run_timestamp.isoformat()} "
            f"({len(self.scrapers)} retailers, concurrency {self.config.concurrency})"
        )

        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def bounded(scraper: BaseScraper) -> RunResult:
            async with semaphore:
                return await self.run_retailer(scraper)

        outcomes = await asyncio.gather(
            *(bounded(scraper) for scraper in self.scrapers), return_exceptions=True
        )

        results: list[RunResult] = []
        for scraper, outcome in zip(self.scrapers, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"Retailer {scraper.name} crashed: {outcome}")
                outcome = RunResult(
                    retailer_id=scraper.retailer_id,
                    retailer_name=scraper.name,
                    run_id="",
                    status=RunStatus.FAILED,
                    message=f"Run crashed: {outcome}",
                    errors=[_error_entry(outcome)],
                )
            results.append(outcome)

        self._check_and_alert(results)

        summary = {
            "run_timestamp": self.run_timestamp.isoformat(),
            "total_retailers": len(self.scrapers),
            "successful_retailers": sum(1 for r in results if r.success),
            "failed_retailers": sum(1 for r in results if not r.success),
            "overall_success": all(r.status is RunStatus.SUCCESS for r in results),
            "listings_seen": sum(r.listings_seen for r in results),
            "prices_recorded": sum(r.prices_recorded for r in results),
            "results": results,
        }

        logger.info(
            f"Scrape cycle completed: {summary['successful_retailers']}/"
            f"{summary['total_retailers']} retailers successful"
        )

        return summary

    async def run_retailer(self, scraper: BaseScraper) -> RunResult:
        """Run the full pipeline for one retailer.

        Batch failures are caught here and reported in the result; they never
        reach sibling retailer runs.
        """
        result = RunResult(
            retailer_id=scraper.retailer_id,
            retailer_name=scraper.name,
            run_id=uuid4().hex,
            status=RunStatus.RUNNING,
        )
        started_at = utcnow()
        start_time = time.monotonic()

        with structlog.contextvars.bound_contextvars(
            run_id=result.run_id, retailer_id=scraper.retailer_id
        ):
            log_id = await self._start_log(scraper, result, started_at)
            logger.info(f"Starting run for {scraper.name}")

            try:
                await scraper.initialize()
                async with retailer_lock(
                    engine_of(self.session_factory), scraper.retailer_id
                ):
                    await self._ingest_all(scraper, result)
                    result.status = self._final_status(result)
                    if self._should_mark_unseen(result):
                        result.marked_unavailable = await self._mark_unseen_unavailable(
                            scraper.retailer_id, started_at
                        )
            except BatchWriteFailure as e:
                result.status = (
                    RunStatus.PARTIAL_SUCCESS if result.batches_committed else RunStatus.FAILED
                )
                result.message = str(e)
                result.errors.append(_error_entry(e, batch_number=e.batch_number))
                logger.error(f"Batch failure for {scraper.name}: {e}")
            except Exception as e:
                result.status = (
                    RunStatus.PARTIAL_SUCCESS if result.batches_committed else RunStatus.FAILED
                )
                result.message = f"Run aborted: {e}"
                result.errors.append(_error_entry(e))
                logger.error(f"Run for {scraper.name} failed: {e}", exc_info=True)
            finally:
                try:
                    await scraper.cleanup()
                except Exception as e:
                    logger.warning(f"Cleanup failed for {scraper.name}: {e}")

            result.duration_seconds = time.monotonic() - start_time
            if not result.message:
                result.message = (
                    f"Processed {result.listings_seen} listings: "
                    f"{result.products_created} new, "
                    f"{result.mappings_updated} updated, "
                    f"{result.listings_failed} failed, "
                    f"{result.prices_recorded} prices"
                )

            await self._finish_log(log_id, result)
            logger.info(
                f"Finished run for {scraper.name}: {result.status.value} - {result.message}"
            )

        return result

    async def _ingest_all(self, scraper: BaseScraper, result: RunResult) -> None:
        ingestor = BatchIngestor(
            scraper.retailer_id,
            default_currency=scraper.currency,
            infer_units_from_name=self.config.infer_units_from_name,
        )

        batch_number = 0
        async for batch in _batched(scraper.fetch_listings(), self.config.batch_size):
            batch_number += 1
            result.listings_seen += len(batch)

            # A rolled-back batch counts every one of its listings as failed
            try:
                async with get_session(self.session_factory) as session:
                    ingest = await ingestor.ingest(session, batch, batch_number)
            except BatchWriteFailure:
                result.listings_failed += len(batch)
                raise
            except Exception as e:
                result.listings_failed += len(batch)
                raise BatchWriteFailure(
                    scraper.retailer_id, batch_number, len(batch), str(e)
                ) from e

            result.batches_committed += 1
            result.listings_failed += ingest.failed
            result.products_created += ingest.created
            result.mappings_updated += ingest.updated
            result.listings_ingested += len(ingest.records)
            room = MAX_LOGGED_ERRORS - len(result.errors)
            if room > 0:
                result.errors.extend(ingest.errors[:room])

            # Prices follow only a committed ingest
            try:
                async with get_session(self.session_factory) as session:
                    result.prices_recorded += await self.recorder.record(
                        session, ingest.records
                    )
            except SQLAlchemyError as e:
                result.listings_failed += len(ingest.records)
                raise BatchWriteFailure(
                    scraper.retailer_id, batch_number, len(batch), f"price write: {e}"
                ) from e

    @staticmethod
    def _final_status(result: RunResult) -> RunStatus:
        if result.listings_seen == 0:
            return RunStatus.SKIPPED
        if result.listings_failed == 0:
            return RunStatus.SUCCESS
        if result.listings_ingested == 0:
            return RunStatus.FAILED
        return RunStatus.PARTIAL_SUCCESS

    def _should_mark_unseen(self, result: RunResult) -> bool:
        return (
            self.config.mark_unseen_unavailable
            and result.status is RunStatus.SUCCESS
            and result.listings_seen > 0
        )

    async def _mark_unseen_unavailable(self, retailer_id: int, started_at) -> int:
        """Flag mappings not re-observed by this run; prices are left untouched."""
        m = ProductMappingModel
        async with get_session(self.session_factory) as session:
            updated = await session.execute(
                update(m)
                .where(
                    m.retailer_id == retailer_id,
                    m.is_available.is_(True),
                    or_(m.last_seen_at.is_(None), m.last_seen_at < started_at),
                )
                .values(is_available=False)
                .execution_options(synchronize_session=False)
            )
        count = updated.rowcount or 0
        if count:
            logger.info(f"Marked {count} unseen mappings unavailable")
        return count

    async def _start_log(
        self, scraper: BaseScraper, result: RunResult, started_at
    ) -> int:
        """Ensure the retailer row exists and open a RUNNING log entry."""
        async with get_session(self.session_factory) as session:
            retailer = await session.get(RetailerModel, scraper.retailer_id)
            if retailer is None:
                session.add(
                    RetailerModel(
                        id=scraper.retailer_id,
                        name=scraper.name,
                        country_code=scraper.country_code,
                        currency=scraper.currency,
                        base_url=scraper.base_url,
                    )
                )
            else:
                retailer.name = scraper.name
                retailer.currency = scraper.currency
                retailer.country_code = scraper.country_code or retailer.country_code
                retailer.base_url = scraper.base_url or retailer.base_url
            await session.flush()

            log_entry = ScrapeLogModel(
                run_id=result.run_id,
                retailer_id=scraper.retailer_id,
                status=RunStatus.RUNNING.value,
                started_at=started_at,
            )
            session.add(log_entry)
            await session.flush()
            return log_entry.id

    async def _finish_log(self, log_id: int, result: RunResult) -> None:
        try:
            async with get_session(self.session_factory) as session:
                await session.execute(
                    update(ScrapeLogModel)
                    .where(ScrapeLogModel.id == log_id)
                    .values(
                        status=result.status.value,
                        completed_at=utcnow(),
                        listings_seen=result.listings_seen,
                        listings_ingested=result.listings_ingested,
                        listings_failed=result.listings_failed,
                        products_created=result.products_created,
                        mappings_updated=result.mappings_updated,
                        prices_recorded=result.prices_recorded,
                        message=result.message,
                        error_details=result.errors or None,
                        duration_seconds=result.duration_seconds,
                    )
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to write scrape log {log_id}: {e}")

    def _check_and_alert(self, results: list[RunResult]) -> None:
        failures = [r for r in results if not r.success]

        if not failures:
            logger.info("All retailers processed successfully")
            return

        logger.warning(f"Scrape cycle completed with {len(failures)} retailer failures:")
        for result in failures:
            logger.warning(f"  - {result.retailer_name}: {result.message}")


def _error_entry(error: BaseException, **extra: Any) -> dict:
    return {
        "error_type": type(error).__name__,
        "error_message": str(error),
        **extra,
    }


async def run_pipeline(
    scrapers: list[BaseScraper],
    session_factory: sessionmaker | None = None,
    config: PipelineConfig | None = None,
) -> dict:
    """Convenience function to run one scrape cycle.

    Returns:
        Scrape cycle summary
    """
    service = ScraperService(scrapers, session_factory=session_factory, config=config)
    return await service.run()
