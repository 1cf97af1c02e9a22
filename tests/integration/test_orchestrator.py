"""End-to-end tests for ScraperService runs against SQLite.

SQLite allows one writer at a time, so these runs use a pool of one.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from pricetrail.config import PipelineConfig
from pricetrail.db.connection import get_session
from pricetrail.db.models import (
    PriceModel,
    ProductMappingModel,
    RetailerModel,
    ScrapeLogModel,
)
from pricetrail.errors import BatchWriteFailure
from pricetrail.pipeline.base_scraper import BaseScraper
from pricetrail.pipeline.ingestor import BatchIngestor
from pricetrail.pipeline.orchestrator import ScraperService
from pricetrail.pipeline.price_recorder import PriceRecorder
from pricetrail.pipeline.types import RunStatus


class FakeScraper(BaseScraper):
    """Yields preset listings, optionally failing after ``fail_after`` of them."""

    def __init__(self, retailer_id, name, listings, fail_after=None):
        super().__init__(retailer_id, name, {}, currency="EUR", country_code="ME")
        self.listings = listings
        self.fail_after = fail_after
        self.cleaned_up = False

    async def fetch_listings(self):
        for i, listing in enumerate(self.listings):
            if self.fail_after is not None and i >= self.fail_after:
                raise ConnectionError("retailer site went away")
            yield dict(listing)
        if self.fail_after is not None and self.fail_after >= len(self.listings):
            raise ConnectionError("retailer site went away")

    async def cleanup(self):
        self.cleaned_up = True


def _listings(*slugs):
    return [
        {"url": f"https://voli.me/c/{slug}", "name": slug.replace("-", " ").title(), "price": "1.50"}
        for slug in slugs
    ]


def _service(session_factory, scrapers, recorder=None, **config):
    config.setdefault("concurrency", 1)
    config.setdefault("batch_size", 2)
    return ScraperService(
        scrapers,
        session_factory=session_factory,
        config=PipelineConfig(**config),
        recorder=recorder,
    )


async def _count(session_factory, model, *where) -> int:
    async with get_session(session_factory) as session:
        return await session.scalar(select(func.count()).select_from(model).where(*where))


class TestRetailerRun:
    @pytest.mark.asyncio
    async def test_clean_run(self, session_factory):
        scraper = FakeScraper(6, "Voli", _listings("milk", "rice", "bread"))

        result = await _service(session_factory, [scraper]).run_retailer(scraper)

        assert result.status is RunStatus.SUCCESS
        assert result.listings_seen == 3
        assert result.listings_ingested == 3
        assert result.products_created == 3
        assert result.prices_recorded == 3
        assert result.batches_committed == 2
        assert scraper.cleaned_up

        async with get_session(session_factory) as session:
            retailer = await session.get(RetailerModel, 6)
            log = (await session.execute(select(ScrapeLogModel))).scalar_one()

        assert retailer.name == "Voli"
        assert retailer.country_code == "ME"
        assert log.run_id == result.run_id
        assert log.status == "SUCCESS"
        assert log.listings_seen == 3
        assert log.prices_recorded == 3
        assert log.completed_at is not None

    @pytest.mark.asyncio
    async def test_rerun_records_new_prices_on_same_mappings(self, session_factory):
        scraper = FakeScraper(6, "Voli", _listings("milk", "rice"))
        service = _service(session_factory, [scraper])

        await service.run_retailer(scraper)
        second = await service.run_retailer(scraper)

        assert second.products_created == 0
        assert second.mappings_updated == 2
        assert await _count(session_factory, ProductMappingModel) == 2
        assert await _count(session_factory, PriceModel) == 4

    @pytest.mark.asyncio
    async def test_unseen_mappings_marked_unavailable(self, session_factory):
        service = _service(session_factory, [])

        await service.run_retailer(FakeScraper(6, "Voli", _listings("milk", "rice")))
        result = await service.run_retailer(FakeScraper(6, "Voli", _listings("milk")))

        assert result.marked_unavailable == 1
        assert await _count(
            session_factory, ProductMappingModel, ProductMappingModel.is_available.is_(False)
        ) == 1
        # History of the unseen mapping is kept
        assert await _count(session_factory, PriceModel) == 3

    @pytest.mark.asyncio
    async def test_availability_marking_can_be_disabled(self, session_factory):
        service = _service(session_factory, [], mark_unseen_unavailable=False)

        await service.run_retailer(FakeScraper(6, "Voli", _listings("milk", "rice")))
        result = await service.run_retailer(FakeScraper(6, "Voli", _listings("milk")))

        assert result.marked_unavailable == 0

    @pytest.mark.asyncio
    async def test_empty_run_is_skipped(self, session_factory):
        service = _service(session_factory, [])

        await service.run_retailer(FakeScraper(6, "Voli", _listings("milk")))
        result = await service.run_retailer(FakeScraper(6, "Voli", []))

        assert result.status is RunStatus.SKIPPED
        assert result.marked_unavailable == 0
        assert await _count(
            session_factory, ProductMappingModel, ProductMappingModel.is_available.is_(True)
        ) == 1

    @pytest.mark.asyncio
    async def test_invalid_listings_give_partial_success(self, session_factory):
        listings = _listings("milk", "rice") + [{"url": "https://voli.me/c/bad", "name": "Bad", "price": "-3"}]
        scraper = FakeScraper(6, "Voli", listings)

        result = await _service(session_factory, [scraper]).run_retailer(scraper)

        assert result.status is RunStatus.PARTIAL_SUCCESS
        assert result.listings_failed == 1
        assert result.prices_recorded == 2
        assert result.errors[0]["error_type"] == "ValidationError"


class TestRetailerFailures:
    @pytest.mark.asyncio
    async def test_fetch_error_after_committed_batch(self, session_factory):
        scraper = FakeScraper(6, "Voli", _listings("milk", "rice", "bread"), fail_after=2)

        result = await _service(session_factory, [scraper]).run_retailer(scraper)

        assert result.status is RunStatus.PARTIAL_SUCCESS
        assert result.batches_committed == 1
        assert result.prices_recorded == 2
        assert "retailer site went away" in result.message
        assert scraper.cleaned_up
        assert await _count(session_factory, PriceModel) == 2

    @pytest.mark.asyncio
    async def test_fetch_error_before_any_batch(self, session_factory):
        scraper = FakeScraper(6, "Voli", _listings("milk"), fail_after=0)

        result = await _service(session_factory, [scraper]).run_retailer(scraper)

        assert result.status is RunStatus.FAILED
        assert result.errors[0]["error_type"] == "ConnectionError"

        async with get_session(session_factory) as session:
            log = (await session.execute(select(ScrapeLogModel))).scalar_one()
        assert log.status == "FAILED"
        assert log.error_details[0]["error_type"] == "ConnectionError"

    @pytest.mark.asyncio
    async def test_price_write_failure_aborts_run(self, session_factory):
        recorder = Mock(spec=PriceRecorder)
        recorder.record.side_effect = OperationalError(
            "INSERT INTO prices", {}, Exception("disk I/O error")
        )
        scraper = FakeScraper(6, "Voli", _listings("milk", "rice", "bread"))

        result = await _service(session_factory, [scraper], recorder=recorder).run_retailer(
            scraper
        )

        assert result.status is RunStatus.PARTIAL_SUCCESS
        assert result.prices_recorded == 0
        assert result.errors[-1]["error_type"] == "BatchWriteFailure"
        assert result.errors[-1]["batch_number"] == 1
        # The committed ingest of batch 1 stays, batch 2 never ran
        assert await _count(session_factory, ProductMappingModel) == 2
        assert result.listings_failed == 2
        assert await _count(session_factory, PriceModel) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            BatchWriteFailure(6, 2, 2, "deadlock detected"),
            RuntimeError("unexpected listing shape"),
        ],
    )
    async def test_rolled_back_batch_counts_as_failed(self, session_factory, error):
        ingest = BatchIngestor.ingest

        async def fail_second_batch(self, session, listings, batch_number=0):
            if batch_number == 2:
                raise error
            return await ingest(self, session, listings, batch_number)

        scraper = FakeScraper(6, "Voli", _listings("milk", "rice", "bread", "eggs"))

        with patch.object(BatchIngestor, "ingest", fail_second_batch):
            result = await _service(session_factory, [scraper]).run_retailer(scraper)

        assert result.status is RunStatus.PARTIAL_SUCCESS
        assert result.listings_seen == 4
        assert result.listings_ingested == 2
        assert result.listings_failed == 2
        assert result.errors[-1]["error_type"] == "BatchWriteFailure"
        assert result.errors[-1]["batch_number"] == 2

        async with get_session(session_factory) as session:
            log = (await session.execute(select(ScrapeLogModel))).scalar_one()
        assert log.listings_failed == 2
        assert await _count(session_factory, ProductMappingModel) == 2


class TestScrapeCycle:
    @pytest.mark.asyncio
    async def test_failing_retailer_does_not_affect_siblings(self, session_factory):
        good = FakeScraper(6, "Voli", _listings("milk", "rice"))
        bad = FakeScraper(247, "SPAR Albania", _listings("milk"), fail_after=0)

        summary = await _service(session_factory, [good, bad]).run()

        results = {r.retailer_id: r for r in summary["results"]}
        assert results[6].status is RunStatus.SUCCESS
        assert results[247].status is RunStatus.FAILED
        assert summary["successful_retailers"] == 1
        assert summary["failed_retailers"] == 1
        assert summary["prices_recorded"] == 2
        assert await _count(
            session_factory, ProductMappingModel, ProductMappingModel.retailer_id == 6
        ) == 2
