"""Append-only price history.

Prices are written only for mappings committed by an earlier ingest
transaction and are never updated. The retention prune is the only delete.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import delete, insert
from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.canonical.units import price_per_unit
from pricetrail.db.models import PriceModel
from pricetrail.models import utcnow
from pricetrail.pipeline.types import IngestedListing

logger = logging.getLogger(__name__)


class PriceRecorder:
    """Write one price row per ingested listing."""

    async def record(
        self, session: AsyncSession, records: Sequence[IngestedListing]
    ) -> int:
        """Insert the prices of one committed batch.

        Args:
            session: Session for the price transaction
            records: Listings with the mapping id they were ingested to

        Returns:
            Number of price rows inserted
        """
        if not records:
            return 0

        rows = [
            {
                "mapping_id": record.mapping_id,
                "price": record.listing.price,
                "currency": record.listing.currency,
                "original_price": record.listing.original_price,
                "is_on_sale": record.listing.is_on_sale,
                # None when the unit has no canonical scale
                "price_per_unit": price_per_unit(
                    record.listing.price, record.unit_quantity, record.unit
                ),
                "observed_at": record.listing.observed_at,
            }
            for record in records
        ]

        await session.execute(insert(PriceModel), rows)
        logger.debug(f"Recorded {len(rows)} prices")
        return len(rows)

    async def prune(
        self,
        session: AsyncSession,
        older_than_days: int,
        now: datetime | None = None,
    ) -> int:
        """Delete price rows observed more than ``older_than_days`` ago.

        Returns:
            Number of rows deleted
        """
        if older_than_days <= 0:
            raise ValueError("older_than_days must be positive")

        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        result = await session.execute(
            delete(PriceModel)
            .where(PriceModel.observed_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0

        logger.info(f"Pruned {deleted} prices observed before {cutoff.isoformat()}")
        return deleted
