"""Batched, transactional product/mapping ingestion.

One call to ``BatchIngestor.ingest`` handles one batch inside the caller's
session: validate, normalize, de-duplicate, resolve, then one set-oriented
update of every matched identity and one upsert-safe creation of every
unmatched one. The caller commits or rolls back the whole batch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import ValidationError
from sqlalchemy import bindparam, delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.canonical.normalize import (
    EXTERNAL_ID_PATTERNS,
    extract_external_id,
    extract_quantity,
    normalize_brand,
    normalize_external_id,
    normalize_product_name,
    normalize_product_url,
)
from pricetrail.db.models import ProductMappingModel, ProductModel
from pricetrail.errors import BatchWriteFailure, UnsupportedDialect
from pricetrail.models import Listing, utcnow
from pricetrail.pipeline.resolver import IdentityResolver
from pricetrail.pipeline.types import (
    IngestedListing,
    IngestResult,
    MatchTier,
    PreparedListing,
    Resolution,
)

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class BatchIngestor:
    """Ingest listings for one retailer, one batch per transaction."""

    def __init__(
        self,
        retailer_id: int,
        default_currency: str = "EUR",
        infer_units_from_name: bool = False,
        external_id_patterns: tuple[re.Pattern[str], ...] = EXTERNAL_ID_PATTERNS,
    ):
        self.retailer_id = retailer_id
        self.default_currency = default_currency
        self.infer_units_from_name = infer_units_from_name
        self.external_id_patterns = external_id_patterns

    async def ingest(
        self,
        session: AsyncSession,
        listings: Iterable[Listing | dict[str, Any]],
        batch_number: int = 0,
    ) -> IngestResult:
        """Write one batch of listings.

        Args:
            session: Session whose transaction covers the whole batch
            listings: Raw listings as yielded by the scraper
            batch_number: Position of the batch in the run, for error reports

        Returns:
            IngestResult with the final mapping id of every written listing

        Raises:
            BatchWriteFailure: If any write fails; the session must be rolled back
            UnsupportedDialect: If the session's database has no mapping upsert
        """
        result = IngestResult(retailer_id=self.retailer_id)
        items = self.prepare(listings, result)
        if not items:
            return result

        dialect = session.bind.dialect.name
        if dialect not in _UPSERT_DIALECTS:
            raise UnsupportedDialect(dialect)

        try:
            resolutions = await IdentityResolver(session, self.retailer_id).resolve(items)
            seen_at = utcnow()

            matched = [r for r in resolutions if r.matched]
            unmatched = [r for r in resolutions if not r.matched]

            await self._update_matched(session, matched, seen_at)
            created = await self._create_unmatched(session, unmatched, seen_at)
            await session.flush()
        except SQLAlchemyError as e:
            raise BatchWriteFailure(
                self.retailer_id, batch_number, len(items), str(e)
            ) from e

        for resolution in resolutions:
            if resolution.matched:
                mapping_id, tier = resolution.target.mapping_id, resolution.tier
                result.updated += 1
            else:
                mapping_id, inserted = created[id(resolution)]
                tier = MatchTier.UNMATCHED
                if inserted:
                    result.created += 1
                else:
                    result.updated += 1

            result.records.append(
                IngestedListing(
                    listing=resolution.item.listing,
                    mapping_id=mapping_id,
                    tier=tier,
                    unit=resolution.item.unit,
                    unit_quantity=resolution.item.unit_quantity,
                )
            )

        logger.info(
            f"Batch {batch_number} ingested for retailer {self.retailer_id}: "
            f"{result.created} created, {result.updated} updated, "
            f"{result.failed} invalid, {result.duplicates} duplicates"
        )
        return result

    def prepare(
        self, listings: Iterable[Listing | dict[str, Any]], result: IngestResult
    ) -> list[PreparedListing]:
        """Validate, normalize and de-duplicate raw listings.

        Invalid listings are counted in ``result.failed``; listings sharing an
        identity key with an earlier one are counted in ``result.duplicates``.
        """
        prepared: list[PreparedListing] = []
        seen_keys: set[str] = set()

        for raw in listings:
            listing = self._validate(raw, result)
            if listing is None:
                continue

            item = self._normalize(listing)
            if item.dedupe_key in seen_keys:
                result.duplicates += 1
                continue
            seen_keys.add(item.dedupe_key)
            prepared.append(item)

        return prepared

    def _validate(self, raw: Listing | dict[str, Any], result: IngestResult) -> Listing | None:
        try:
            if isinstance(raw, Listing):
                listing = raw
            else:
                data = dict(raw)
                data.setdefault("retailer_id", self.retailer_id)
                if not data.get("currency"):
                    data["currency"] = self.default_currency
                listing = Listing.model_validate(data)
        except ValidationError as e:
            result.failed += 1
            result.errors.append(
                {
                    "error_type": "ValidationError",
                    "error_message": str(e),
                    "url": raw.get("url") if isinstance(raw, dict) else None,
                }
            )
            return None

        if listing.retailer_id != self.retailer_id:
            result.failed += 1
            result.errors.append(
                {
                    "error_type": "RetailerMismatch",
                    "error_message": (
                        f"Listing for retailer {listing.retailer_id} "
                        f"in batch for retailer {self.retailer_id}"
                    ),
                    "url": listing.url,
                }
            )
            return None

        return listing

    def _normalize(self, listing: Listing) -> PreparedListing:
        url = normalize_product_url(listing.url)
        external_id = normalize_external_id(listing.external_id) or extract_external_id(
            url, self.external_id_patterns
        )

        unit, quantity = listing.unit, listing.unit_quantity
        if self.infer_units_from_name and unit is None and quantity is None:
            inferred = extract_quantity(listing.name)
            if inferred:
                quantity, unit = inferred

        return PreparedListing(
            listing=listing,
            external_id=external_id,
            url=url,
            normalized_name=normalize_product_name(listing.name),
            brand_key=normalize_brand(listing.brand),
            unit=unit,
            unit_quantity=quantity,
        )

    async def _update_matched(
        self, session: AsyncSession, matched: Sequence[Resolution], seen_at
    ) -> None:
        """Refresh matched products and mappings in one executemany each."""
        if not matched:
            return

        products = ProductModel.__table__
        mappings = ProductMappingModel.__table__

        await session.execute(
            update(products)
            .where(products.c.id == bindparam("b_id"))
            .values(
                name=bindparam("b_name"),
                normalized_name=bindparam("b_normalized_name"),
                brand=func.coalesce(bindparam("b_brand"), products.c.brand),
                category=func.coalesce(bindparam("b_category"), products.c.category),
                unit=func.coalesce(bindparam("b_unit"), products.c.unit),
                unit_quantity=func.coalesce(
                    bindparam("b_unit_quantity", type_=products.c.unit_quantity.type),
                    products.c.unit_quantity,
                ),
                image_url=func.coalesce(bindparam("b_image_url"), products.c.image_url),
            ),
            [
                {
                    "b_id": r.target.product_id,
                    "b_name": r.item.listing.name,
                    "b_normalized_name": r.item.normalized_name,
                    "b_brand": r.item.listing.brand,
                    "b_category": r.item.listing.category,
                    "b_unit": r.item.unit,
                    "b_unit_quantity": r.item.unit_quantity,
                    "b_image_url": r.item.listing.image_url,
                }
                for r in matched
            ],
        )

        # external_id is write-once: an existing value always wins
        await session.execute(
            update(mappings)
            .where(mappings.c.id == bindparam("b_id"))
            .values(
                url=bindparam("b_url"),
                external_id=func.coalesce(mappings.c.external_id, bindparam("b_external_id")),
                last_seen_at=bindparam("b_seen_at", type_=mappings.c.last_seen_at.type),
                is_available=True,
            ),
            [
                {
                    "b_id": r.target.mapping_id,
                    "b_url": r.item.url,
                    "b_external_id": r.item.external_id,
                    "b_seen_at": seen_at,
                }
                for r in matched
            ],
        )

    async def _create_unmatched(
        self, session: AsyncSession, unmatched: Sequence[Resolution], seen_at
    ) -> dict[int, tuple[int, bool]]:
        """Create products and upsert their mappings.

        Returns:
            id(resolution) -> (final mapping id, whether a new mapping was inserted)
        """
        if not unmatched:
            return {}

        products = [
            ProductModel(
                name=r.item.listing.name,
                normalized_name=r.item.normalized_name,
                brand=r.item.listing.brand,
                category=r.item.listing.category,
                unit=r.item.unit,
                unit_quantity=r.item.unit_quantity,
                image_url=r.item.listing.image_url,
            )
            for r in unmatched
        ]
        session.add_all(products)
        await session.flush()

        insert = _UPSERT_DIALECTS[session.bind.dialect.name]

        stmt = insert(ProductMappingModel.__table__).values(
            [
                {
                    "product_id": product.id,
                    "retailer_id": self.retailer_id,
                    "external_id": r.item.external_id,
                    "url": r.item.url,
                    "last_seen_at": seen_at,
                    "is_available": True,
                }
                for r, product in zip(unmatched, products)
            ]
        )
        # A concurrent writer may have created the same external id since resolution
        stmt = stmt.on_conflict_do_update(
            index_elements=["retailer_id", "external_id"],
            set_={
                "url": stmt.excluded.url,
                "last_seen_at": stmt.excluded.last_seen_at,
                "is_available": True,
            },
        ).returning(
            ProductMappingModel.__table__.c.id,
            ProductMappingModel.__table__.c.product_id,
            ProductMappingModel.__table__.c.external_id,
        )
        rows = (await session.execute(stmt)).all()

        by_external_id = {row.external_id: row for row in rows if row.external_id}
        by_product_id = {row.product_id: row for row in rows}

        created: dict[int, tuple[int, bool]] = {}
        orphans: list[int] = []
        for r, product in zip(unmatched, products):
            row = by_external_id.get(r.item.external_id) if r.item.external_id else None
            if row is None:
                row = by_product_id[product.id]
            inserted = row.product_id == product.id
            if not inserted:
                orphans.append(product.id)
            created[id(r)] = (row.id, inserted)

        if orphans:
            await session.execute(delete(ProductModel).where(ProductModel.id.in_(orphans)))
            logger.warning(
                f"Retailer {self.retailer_id}: {len(orphans)} creations collided "
                "with existing external ids and were merged"
            )

        return created
