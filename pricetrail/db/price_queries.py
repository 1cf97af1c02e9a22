"""Read-side price and rate queries.

These are the shapes handed to the reporting layer: latest price per
mapping, price history by mapping and date range, latest rate per currency.
EUR amounts are only filled when the caller passes a rate snapshot.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.db.models import LATEST_RATES_VIEW, PriceModel, ProductMappingModel
from pricetrail.models import LatestRate, PricePoint

if TYPE_CHECKING:
    from pricetrail.integration.rate_snapshot import RateSnapshot

# Read-only handle on the view; kept off Base.metadata so create_all skips it
latest_rates_view = Table(
    LATEST_RATES_VIEW,
    MetaData(),
    Column("id", Integer),
    Column("currency_code", String(3)),
    Column("rate_to_eur", Numeric(20, 10)),
    Column("source", Text),
    Column("fetched_at", DateTime(timezone=True)),
)


async def get_latest_rates(session: AsyncSession) -> list[LatestRate]:
    """Latest stored rate per currency, ordered by currency code."""
    result = await session.execute(
        select(
            latest_rates_view.c.currency_code,
            latest_rates_view.c.rate_to_eur,
            latest_rates_view.c.source,
            latest_rates_view.c.fetched_at,
        ).order_by(latest_rates_view.c.currency_code, latest_rates_view.c.id.desc())
    )

    rates: dict[str, LatestRate] = {}
    for row in result:
        # Two rows can share a fetched_at; the highest id was listed first
        if row.currency_code not in rates:
            rates[row.currency_code] = LatestRate(
                currency_code=row.currency_code,
                rate_to_eur=row.rate_to_eur,
                source=row.source,
                fetched_at=row.fetched_at,
            )
    return list(rates.values())


async def get_latest_prices(
    session: AsyncSession,
    retailer_id: int | None = None,
    mapping_ids: Iterable[int] | None = None,
    snapshot: RateSnapshot | None = None,
) -> list[PricePoint]:
    """Most recent price observation per mapping.

    Args:
        session: Database session
        retailer_id: Only mappings of this retailer
        mapping_ids: Only these mappings
        snapshot: Rates used to fill ``price_eur``

    Returns:
        One PricePoint per mapping that has any price, ordered by mapping id
    """
    ranked = select(
        PriceModel,
        func.row_number()
        .over(
            partition_by=PriceModel.mapping_id,
            order_by=(PriceModel.observed_at.desc(), PriceModel.id.desc()),
        )
        .label("rank"),
    )
    if retailer_id is not None:
        ranked = ranked.join(
            ProductMappingModel, ProductMappingModel.id == PriceModel.mapping_id
        ).where(ProductMappingModel.retailer_id == retailer_id)
    if mapping_ids is not None:
        ranked = ranked.where(PriceModel.mapping_id.in_(list(mapping_ids)))

    subq = ranked.subquery()
    result = await session.execute(
        select(subq).where(subq.c.rank == 1).order_by(subq.c.mapping_id)
    )
    return [_row_to_price_point(row, snapshot) for row in result]


async def get_price_history(
    session: AsyncSession,
    mapping_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    snapshot: RateSnapshot | None = None,
) -> list[PricePoint]:
    """Price observations for one mapping, oldest first.

    Args:
        session: Database session
        mapping_id: Mapping to read
        start: Inclusive lower bound on observed_at
        end: Exclusive upper bound on observed_at
        snapshot: Rates used to fill ``price_eur``
    """
    stmt = select(PriceModel).where(PriceModel.mapping_id == mapping_id)
    if start is not None:
        stmt = stmt.where(PriceModel.observed_at >= start)
    if end is not None:
        stmt = stmt.where(PriceModel.observed_at < end)
    stmt = stmt.order_by(PriceModel.observed_at, PriceModel.id)

    result = await session.execute(stmt)
    return [_row_to_price_point(row, snapshot) for row in result.scalars()]


def _row_to_price_point(row, snapshot: RateSnapshot | None) -> PricePoint:
    """Convert a PriceModel instance or a selected row to PricePoint."""
    point = PricePoint(
        price_id=row.id,
        mapping_id=row.mapping_id,
        price=row.price,
        currency=row.currency,
        original_price=row.original_price,
        is_on_sale=row.is_on_sale,
        price_per_unit=row.price_per_unit,
        observed_at=row.observed_at,
    )
    if snapshot is not None:
        point.price_eur = snapshot.to_eur(point.price, point.currency)
    return point
