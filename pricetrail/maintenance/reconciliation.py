"""Duplicate mapping reconciliation.

Repairs mappings created twice for the same (retailer, url) before external
ids were captured consistently. Per normalized url the newest mapping
(highest id) is kept; every price of the other mappings is re-pointed to it
before they are deleted, and products left without mappings are removed.
Everything runs in one transaction under the retailer lock, and a second
run over repaired data writes nothing.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from pricetrail.canonical.normalize import (
    EXTERNAL_ID_PATTERNS,
    extract_external_id,
    strip_one_trailing_slash,
)
from pricetrail.db.connection import engine_of, get_session, get_session_factory
from pricetrail.db.locks import retailer_lock
from pricetrail.db.models import PriceModel, ProductMappingModel, ProductModel
from pricetrail.errors import ReconciliationFailure, RetailerBusy

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """What one reconciliation run found and changed."""

    retailer_id: int
    dry_run: bool = False
    mappings_scanned: int = 0
    duplicate_groups: int = 0
    mappings_deleted: int = 0
    prices_repointed: int = 0
    products_deleted: int = 0
    canonical_links_moved: int = 0
    external_ids_inherited: int = 0
    external_ids_backfilled: int = 0

    @property
    def changed(self) -> bool:
        return any(
            (
                self.mappings_deleted,
                self.prices_repointed,
                self.products_deleted,
                self.canonical_links_moved,
                self.external_ids_inherited,
                self.external_ids_backfilled,
            )
        )


@dataclass(frozen=True)
class _MappingRow:
    id: int
    product_id: int
    external_id: str | None
    url: str


class ReconciliationJob:
    """Idempotent per-retailer duplicate repair.

    Usage:
        job = ReconciliationJob()
        report = await job.run(retailer_id=6)
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        external_id_patterns: tuple[re.Pattern[str], ...] = EXTERNAL_ID_PATTERNS,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.external_id_patterns = external_id_patterns

    async def run(
        self,
        retailer_id: int,
        dry_run: bool = False,
        backfill_external_ids: bool = True,
    ) -> ReconciliationReport:
        """Reconcile one retailer.

        Args:
            retailer_id: Retailer to repair
            dry_run: Report what would change without writing
            backfill_external_ids: Fill missing external ids from url patterns

        Returns:
            ReconciliationReport

        Raises:
            RetailerBusy: If ingestion or another job holds the retailer lock
            ReconciliationFailure: If the transaction was rolled back
        """
        report = ReconciliationReport(retailer_id=retailer_id, dry_run=dry_run)

        try:
            async with retailer_lock(
                engine_of(self.session_factory), retailer_id, wait=False
            ):
                async with get_session(self.session_factory) as session:
                    await self._reconcile(session, report, backfill_external_ids)
        except RetailerBusy:
            logger.warning(f"Reconciliation skipped: retailer {retailer_id} is busy")
            raise
        except SQLAlchemyError as e:
            logger.error(f"Reconciliation for retailer {retailer_id} rolled back: {e}")
            raise ReconciliationFailure(
                f"Reconciliation for retailer {retailer_id} rolled back: {e}"
            ) from e

        logger.info(
            f"Reconciliation for retailer {retailer_id}"
            f"{' (dry run)' if dry_run else ''}: "
            f"{report.duplicate_groups} duplicate groups, "
            f"{report.mappings_deleted} mappings removed, "
            f"{report.prices_repointed} prices re-pointed, "
            f"{report.products_deleted} products removed, "
            f"{report.external_ids_backfilled} external ids backfilled"
        )
        return report

    async def _reconcile(
        self,
        session: AsyncSession,
        report: ReconciliationReport,
        backfill_external_ids: bool,
    ) -> None:
        m = ProductMappingModel
        result = await session.execute(
            select(m.id, m.product_id, m.external_id, m.url)
            .where(m.retailer_id == report.retailer_id)
            .order_by(m.id.desc())
        )
        mappings = [_MappingRow(*row) for row in result]
        report.mappings_scanned = len(mappings)

        # Newest first within each partition, so index 0 is the keeper
        partitions: dict[str, list[_MappingRow]] = defaultdict(list)
        for mapping in mappings:
            partitions[strip_one_trailing_slash(mapping.url.strip())].append(mapping)

        groups = [rows for rows in partitions.values() if len(rows) > 1]
        report.duplicate_groups = len(groups)

        duplicate_ids = [dup.id for rows in groups for dup in rows[1:]]
        survivors = {rows[0].id: rows[0] for rows in partitions.values()}

        # keeper id -> external id inherited from its newest duplicate that has one
        inherited: dict[int, str] = {}
        for rows in groups:
            keeper = rows[0]
            if keeper.external_id is None:
                donor = next((dup for dup in rows[1:] if dup.external_id), None)
                if donor is not None:
                    inherited[keeper.id] = donor.external_id
        report.external_ids_inherited = len(inherited)

        if groups:
            await self._merge_groups(session, report, groups, duplicate_ids, inherited)

        if backfill_external_ids:
            await self._backfill(session, report, survivors, inherited)

    async def _merge_groups(
        self,
        session: AsyncSession,
        report: ReconciliationReport,
        groups: list[list[_MappingRow]],
        duplicate_ids: list[int],
        inherited: dict[int, str],
    ) -> None:
        m = ProductMappingModel
        p = ProductModel
        duplicate_product_ids = sorted({dup.product_id for rows in groups for dup in rows[1:]})

        orphan_filter = (
            p.id.in_(duplicate_product_ids),
            ~exists().where(m.product_id == p.id, m.id.not_in(duplicate_ids)),
        )

        if report.dry_run:
            report.mappings_deleted = len(duplicate_ids)
            report.prices_repointed = (
                await session.execute(
                    select(func.count())
                    .select_from(PriceModel)
                    .where(PriceModel.mapping_id.in_(duplicate_ids))
                )
            ).scalar_one()
            report.products_deleted = (
                await session.execute(select(func.count()).select_from(p).where(*orphan_filter))
            ).scalar_one()
            report.canonical_links_moved = len(await self._canonical_moves(session, groups))
            return

        # Keep a curated canonical link that only a duplicate's product carried
        for keeper_product_id, canonical_id in await self._canonical_moves(session, groups):
            await session.execute(
                update(p)
                .where(p.id == keeper_product_id)
                .values(canonical_product_id=canonical_id)
                .execution_options(synchronize_session=False)
            )
            report.canonical_links_moved += 1

        for rows in groups:
            keeper = rows[0]
            moved = await session.execute(
                update(PriceModel)
                .where(PriceModel.mapping_id.in_([dup.id for dup in rows[1:]]))
                .values(mapping_id=keeper.id)
                .execution_options(synchronize_session=False)
            )
            report.prices_repointed += moved.rowcount or 0

        deleted = await session.execute(
            delete(m).where(m.id.in_(duplicate_ids)).execution_options(synchronize_session=False)
        )
        report.mappings_deleted = deleted.rowcount or 0

        # Only after the duplicates are gone, the (retailer, external id) pair is free
        for keeper_id, external_id in inherited.items():
            await session.execute(
                update(m)
                .where(m.id == keeper_id, m.external_id.is_(None))
                .values(external_id=external_id)
                .execution_options(synchronize_session=False)
            )

        orphans = await session.execute(
            delete(p)
            .where(p.id.in_(duplicate_product_ids), ~exists().where(m.product_id == p.id))
            .execution_options(synchronize_session=False)
        )
        report.products_deleted = orphans.rowcount or 0

    async def _canonical_moves(
        self, session: AsyncSession, groups: list[list[_MappingRow]]
    ) -> list[tuple[int, int]]:
        """(keeper product id, canonical id) pairs for keepers without a link."""
        product_ids = {row.product_id for rows in groups for row in rows}
        result = await session.execute(
            select(ProductModel.id, ProductModel.canonical_product_id).where(
                ProductModel.id.in_(product_ids)
            )
        )
        links = {row.id: row.canonical_product_id for row in result}

        moves = []
        for rows in groups:
            keeper = rows[0]
            if links.get(keeper.product_id) is not None:
                continue
            donor = next(
                (links[dup.product_id] for dup in rows[1:] if links.get(dup.product_id)),
                None,
            )
            if donor is not None:
                moves.append((keeper.product_id, donor))
        return moves

    async def _backfill(
        self,
        session: AsyncSession,
        report: ReconciliationReport,
        survivors: dict[int, _MappingRow],
        inherited: dict[int, str],
    ) -> None:
        """Fill missing external ids from url patterns when nobody owns them."""
        owned = {
            inherited.get(row.id) or row.external_id
            for row in survivors.values()
            if inherited.get(row.id) or row.external_id
        }

        updates: dict[int, str] = {}
        # Newest mapping claims an id shared by several urls
        for row in sorted(survivors.values(), key=lambda r: r.id, reverse=True):
            if row.external_id is not None or row.id in inherited:
                continue
            external_id = extract_external_id(row.url, self.external_id_patterns)
            if external_id is None or external_id in owned:
                continue
            owned.add(external_id)
            updates[row.id] = external_id

        report.external_ids_backfilled = len(updates)
        if report.dry_run or not updates:
            return

        m = ProductMappingModel
        for mapping_id, external_id in updates.items():
            await session.execute(
                update(m)
                .where(m.id == mapping_id, m.external_id.is_(None))
                .values(external_id=external_id)
                .execution_options(synchronize_session=False)
            )
