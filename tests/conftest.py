"""Pytest configuration and fixtures for PriceTrail tests.

Database-backed fixtures use a file-based SQLite database per test so that
the separate sessions of one pipeline run see each other's commits.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from pricetrail.canonical.normalize import normalize_product_name
from pricetrail.config import reset_config
from pricetrail.db.connection import (
    create_engine_for_url,
    get_session,
    init_db,
    make_session_factory,
)
from pricetrail.db.models import ProductMappingModel, ProductModel, RetailerModel

RETAILER_ID = 6


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """Fresh SQLite database with the full schema."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'pricetrail.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture()
async def retailer_id(session_factory) -> int:
    """Retailer 6 ("Voli", EUR) present in the database."""
    async with get_session(session_factory) as session:
        session.add(RetailerModel(id=RETAILER_ID, name="Voli", currency="EUR", country_code="ME"))
    return RETAILER_ID


@pytest.fixture
def make_listing():
    """Build raw listing dicts as a scraper would yield them."""

    def _make(**overrides: Any) -> dict[str, Any]:
        listing: dict[str, Any] = {
            "retailer_id": RETAILER_ID,
            "url": "https://shop.example/c/whole-milk-1l",
            "name": "Whole Milk 1L",
            "brand": "Lazar",
            "price": Decimal("1.19"),
            "currency": "EUR",
        }
        listing.update(overrides)
        return listing

    return _make


@pytest.fixture
def add_mapping():
    """Insert a product and its mapping directly, bypassing resolution."""

    async def _add(
        session,
        url: str,
        external_id: str | None = None,
        name: str = "Plain Item",
        brand: str | None = None,
        retailer_id: int = RETAILER_ID,
    ) -> ProductMappingModel:
        product = ProductModel(
            name=name, normalized_name=normalize_product_name(name), brand=brand
        )
        session.add(product)
        await session.flush()

        mapping = ProductMappingModel(
            product_id=product.id,
            retailer_id=retailer_id,
            external_id=external_id,
            url=url,
        )
        session.add(mapping)
        await session.flush()
        return mapping

    return _add
