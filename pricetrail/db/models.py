"""SQLAlchemy async database models for PriceTrail.

Products are per-retailer identities, mappings link them to a retailer's
listing identity, prices are an append-only history hanging off mappings.
Exchange rates are a time series; the latest rate per currency is read
through the ``latest_exchange_rates`` view.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DDL,
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RetailerModel(Base):
    """A retailer site scraped as one pipeline."""

    __tablename__ = "retailers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    country_code: Mapped[str | None] = mapped_column(String(2))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    base_url: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class CanonicalProductModel(Base):
    """Manually curated cross-retailer grouping (maintained by the admin layer)."""

    __tablename__ = "canonical_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    show_per_unit_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ProductModel(Base):
    """Canonical per-retailer product identity."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_name: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(Text)

    unit: Mapped[str | None] = mapped_column(String(32))
    unit_quantity: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    image_url: Mapped[str | None] = mapped_column(Text)

    # Set only through link_canonical_product()
    canonical_product_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("canonical_products.id", ondelete="SET NULL"), index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        # Tier 3 lookups (normalized name + brand)
        Index("idx_products_normalized_name", "normalized_name"),
    )


class ProductMappingModel(Base):
    """Durable link from a product to one retailer's listing identity.

    external_id is write-once: updates only ever fill a NULL.
    """

    __tablename__ = "product_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False, index=True
    )
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id"), nullable=False, index=True
    )
    external_id: Mapped[str | None] = mapped_column(Text)
    url: Mapped[str] = mapped_column(Text, nullable=False)

    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        # Tier 1 identity; NULL external ids never collide
        UniqueConstraint("retailer_id", "external_id", name="uq_mapping_retailer_external_id"),
        UniqueConstraint("product_id", "retailer_id", name="uq_mapping_product_retailer"),
        # Tier 2 lookups and reconciliation partitions
        Index("idx_mapping_retailer_url", "retailer_id", "url"),
        Index("idx_mapping_last_seen", "retailer_id", "last_seen_at"),
    )


class PriceModel(Base):
    """Immutable price observation."""

    __tablename__ = "prices"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    # No cascade: prices must be re-pointed before a mapping can go
    mapping_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("product_mappings.id"), nullable=False
    )

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    original_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    is_on_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))

    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_price_non_negative"),
        # Latest price / history by mapping
        Index("idx_prices_mapping_observed", "mapping_id", "observed_at"),
        # Retention pruning
        Index("idx_prices_observed", "observed_at"),
    )


class ExchangeRateModel(Base):
    """Append-only exchange-rate observation (EUR per unit of currency)."""

    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_to_eur: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("rate_to_eur > 0", name="check_rate_positive"),
        Index("idx_exchange_rates_currency_fetched", "currency_code", "fetched_at"),
    )


class ScrapeLogModel(Base):
    """One retailer pipeline run, for monitoring and diagnostics."""

    __tablename__ = "scrape_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(Text, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    listings_seen: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    listings_ingested: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    listings_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mappings_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prices_recorded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    message: Mapped[str | None] = mapped_column(Text)
    error_details: Mapped[list | None] = mapped_column(JSON)
    duration_seconds: Mapped[float | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('RUNNING', 'SUCCESS', 'FAILED', 'PARTIAL_SUCCESS', 'SKIPPED')",
            name="check_scrape_status_valid",
        ),
        Index("idx_scrape_logs_retailer_started", "retailer_id", "started_at"),
    )


# Latest rate per currency: max fetched_at wins, rows are never updated in place
LATEST_RATES_VIEW = "latest_exchange_rates"

event.listen(
    ExchangeRateModel.__table__,
    "after_create",
    DDL(
        f"CREATE VIEW {LATEST_RATES_VIEW} AS "
        "SELECT er.id, er.currency_code, er.rate_to_eur, er.source, er.fetched_at "
        "FROM exchange_rates er "
        "JOIN (SELECT currency_code, MAX(fetched_at) AS fetched_at "
        "      FROM exchange_rates GROUP BY currency_code) latest "
        "ON latest.currency_code = er.currency_code "
        "AND latest.fetched_at = er.fetched_at"
    ),
)
event.listen(
    ExchangeRateModel.__table__,
    "before_drop",
    DDL(f"DROP VIEW IF EXISTS {LATEST_RATES_VIEW}"),
)
