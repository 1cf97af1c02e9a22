"""Database layer for PriceTrail with async SQLAlchemy."""

from pricetrail.db.connection import get_session, init_db
from pricetrail.db.models import (
    Base,
    CanonicalProductModel,
    ExchangeRateModel,
    PriceModel,
    ProductMappingModel,
    ProductModel,
    RetailerModel,
    ScrapeLogModel,
)

__all__ = [
    "Base",
    "RetailerModel",
    "CanonicalProductModel",
    "ProductModel",
    "ProductMappingModel",
    "PriceModel",
    "ExchangeRateModel",
    "ScrapeLogModel",
    "get_session",
    "init_db",
]
