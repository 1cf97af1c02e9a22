"""Integration tests for read-side price queries and canonical linking."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pricetrail.canonical.linking import link_canonical_product
from pricetrail.db.connection import get_session
from pricetrail.db.models import CanonicalProductModel, PriceModel, ProductModel, RetailerModel
from pricetrail.db.price_queries import get_latest_prices, get_price_history
from pricetrail.errors import LinkTargetNotFound
from pricetrail.integration.rate_snapshot import RateSnapshot

T0 = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def seed_prices(session_factory, retailer_id, add_mapping):
    """Milk priced on three days at Voli, rice once at a second retailer."""

    async def _seed():
        async with get_session(session_factory) as session:
            session.add(RetailerModel(id=7, name="Trendyol", currency="TRY"))
            await session.flush()
            milk = await add_mapping(session, "https://shop.example/c/milk")
            rice = await add_mapping(session, "https://shop.example/c/rice", retailer_id=7)

            for day, price in enumerate(("1.19", "1.09", "1.29")):
                session.add(
                    PriceModel(
                        mapping_id=milk.id,
                        price=Decimal(price),
                        currency="EUR",
                        observed_at=T0 + timedelta(days=day),
                    )
                )
            session.add(
                PriceModel(
                    mapping_id=rice.id,
                    price=Decimal("100.00"),
                    currency="TRY",
                    observed_at=T0,
                )
            )
            return milk, rice

    return _seed


class TestLatestPrices:
    @pytest.mark.asyncio
    async def test_one_row_per_mapping(self, session_factory, seed_prices):
        milk, rice = await seed_prices()

        async with get_session(session_factory) as session:
            latest = await get_latest_prices(session)

        assert [(p.mapping_id, p.price) for p in latest] == [
            (milk.id, Decimal("1.29")),
            (rice.id, Decimal("100.00")),
        ]
        assert all(p.price_eur is None for p in latest)

    @pytest.mark.asyncio
    async def test_filters(self, session_factory, seed_prices):
        milk, rice = await seed_prices()

        async with get_session(session_factory) as session:
            by_retailer = await get_latest_prices(session, retailer_id=7)
            by_mapping = await get_latest_prices(session, mapping_ids=[milk.id])

        assert [p.mapping_id for p in by_retailer] == [rice.id]
        assert [p.mapping_id for p in by_mapping] == [milk.id]

    @pytest.mark.asyncio
    async def test_snapshot_fills_eur_amounts(self, session_factory, seed_prices):
        await seed_prices()
        snapshot = RateSnapshot.from_rows({"TRY": (Decimal("0.02"), "frankfurter")})

        async with get_session(session_factory) as session:
            latest = await get_latest_prices(session, snapshot=snapshot)

        assert [p.price_eur for p in latest] == [Decimal("1.29"), Decimal("2.00")]


class TestPriceHistory:
    @pytest.mark.asyncio
    async def test_oldest_first(self, session_factory, seed_prices):
        milk, _ = await seed_prices()

        async with get_session(session_factory) as session:
            history = await get_price_history(session, milk.id)

        assert [p.price for p in history] == [Decimal("1.19"), Decimal("1.09"), Decimal("1.29")]

    @pytest.mark.asyncio
    async def test_range_is_half_open(self, session_factory, seed_prices):
        milk, _ = await seed_prices()

        async with get_session(session_factory) as session:
            history = await get_price_history(
                session, milk.id, start=T0 + timedelta(days=1), end=T0 + timedelta(days=2)
            )

        assert [p.price for p in history] == [Decimal("1.09")]


class TestCanonicalLinking:
    @pytest.mark.asyncio
    async def test_link_and_unlink(self, session_factory, retailer_id, add_mapping):
        async with get_session(session_factory) as session:
            mapping = await add_mapping(session, "https://shop.example/c/milk")
            canonical = CanonicalProductModel(name="Milk 1L")
            session.add(canonical)
            await session.flush()

            product = await link_canonical_product(session, mapping.product_id, canonical.id)
            assert product.canonical_product_id == canonical.id

        async with get_session(session_factory) as session:
            await link_canonical_product(session, mapping.product_id, None)

        async with get_session(session_factory) as session:
            product = await session.get(ProductModel, mapping.product_id)
        assert product.canonical_product_id is None

    @pytest.mark.asyncio
    async def test_missing_targets(self, session_factory, retailer_id, add_mapping):
        async with get_session(session_factory) as session:
            mapping = await add_mapping(session, "https://shop.example/c/milk")

        async with get_session(session_factory) as session:
            with pytest.raises(LinkTargetNotFound):
                await link_canonical_product(session, 9999, None)
            with pytest.raises(LinkTargetNotFound):
                await link_canonical_product(session, mapping.product_id, 9999)
