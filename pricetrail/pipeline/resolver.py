"""Tiered identity resolution for one retailer batch.

Tier 1: (retailer, external id)
Tier 2: (retailer, normalized url), newest mapping wins
Tier 3: (retailer, normalized name, brand), newest mapping wins

Each tier is a single batched query over the listings the previous tiers
left unmatched. A mapping is claimed by at most one listing per batch;
later claimants fall through to the next tier.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.canonical.normalize import normalize_brand
from pricetrail.db.models import ProductMappingModel, ProductModel
from pricetrail.pipeline.types import MappingRef, MatchTier, PreparedListing, Resolution

logger = logging.getLogger(__name__)


def normalized_url_expr(column):
    """SQL form of ``strip_one_trailing_slash`` for a url column."""
    return case(
        (column.like("%/"), func.substr(column, 1, func.length(column) - 1)),
        else_=column,
    )


class IdentityResolver:
    """Classify prepared listings as updates of existing mappings or creations."""

    def __init__(self, session: AsyncSession, retailer_id: int):
        self.session = session
        self.retailer_id = retailer_id

    async def resolve(self, items: Sequence[PreparedListing]) -> list[Resolution]:
        """Resolve every listing to exactly one tier.

        Returns:
            Resolutions in the same order as ``items``
        """
        found: dict[int, tuple[MatchTier, MappingRef]] = {}
        claimed: set[int] = set()

        pending = list(range(len(items)))
        for tier, lookup in (
            (MatchTier.TIER1, self._match_external_ids),
            (MatchTier.TIER2, self._match_urls),
            (MatchTier.TIER3, self._match_names),
        ):
            if not pending:
                break
            matches = await lookup([items[i] for i in pending], claimed)
            still_pending = []
            for i, ref in zip(pending, matches):
                if ref is None:
                    still_pending.append(i)
                else:
                    found[i] = (tier, ref)
            pending = still_pending

        resolutions = []
        for i, item in enumerate(items):
            if i in found:
                tier, ref = found[i]
                resolutions.append(Resolution(item=item, tier=tier, target=ref))
            else:
                resolutions.append(Resolution(item=item, tier=MatchTier.UNMATCHED))

        logger.debug(
            f"Resolved {len(items)} listings for retailer {self.retailer_id}: "
            f"{len(found)} matched, {len(pending)} unmatched"
        )
        return resolutions

    def _mapping_columns(self):
        m = ProductMappingModel
        return (m.id, m.product_id, m.external_id, m.url)

    async def _match_external_ids(
        self, items: list[PreparedListing], claimed: set[int]
    ) -> list[MappingRef | None]:
        ids = {item.external_id for item in items if item.external_id}
        if not ids:
            return [None] * len(items)

        m = ProductMappingModel
        result = await self.session.execute(
            select(*self._mapping_columns()).where(
                m.retailer_id == self.retailer_id, m.external_id.in_(ids)
            )
        )
        by_external_id = {
            row.external_id: MappingRef(row.id, row.product_id, row.external_id, row.url)
            for row in result
        }

        matches: list[MappingRef | None] = []
        for item in items:
            ref = by_external_id.get(item.external_id) if item.external_id else None
            matches.append(self._claim(ref, claimed))
        return matches

    async def _match_urls(
        self, items: list[PreparedListing], claimed: set[int]
    ) -> list[MappingRef | None]:
        urls = {item.url for item in items if item.url}
        if not urls:
            return [None] * len(items)

        m = ProductMappingModel
        url_key = normalized_url_expr(m.url)
        result = await self.session.execute(
            select(*self._mapping_columns(), url_key.label("url_key"))
            .where(m.retailer_id == self.retailer_id, url_key.in_(urls))
            .order_by(m.id.desc())
        )
        candidates: dict[str, list[MappingRef]] = defaultdict(list)
        for row in result:
            candidates[row.url_key].append(
                MappingRef(row.id, row.product_id, row.external_id, row.url)
            )

        matches: list[MappingRef | None] = []
        for item in items:
            ref = next(
                (c for c in candidates.get(item.url, ()) if c.mapping_id not in claimed),
                None,
            )
            matches.append(self._claim(ref, claimed))
        return matches

    async def _match_names(
        self, items: list[PreparedListing], claimed: set[int]
    ) -> list[MappingRef | None]:
        names = {item.normalized_name for item in items if item.normalized_name}
        if not names:
            return [None] * len(items)

        m = ProductMappingModel
        p = ProductModel
        result = await self.session.execute(
            select(*self._mapping_columns(), p.normalized_name, p.brand)
            .join(p, p.id == m.product_id)
            .where(m.retailer_id == self.retailer_id, p.normalized_name.in_(names))
            .order_by(m.id.desc())
        )
        candidates: dict[tuple[str, str], list[MappingRef]] = defaultdict(list)
        for row in result:
            key = (row.normalized_name, normalize_brand(row.brand))
            candidates[key].append(
                MappingRef(row.id, row.product_id, row.external_id, row.url)
            )

        matches: list[MappingRef | None] = []
        for item in items:
            ref = None
            if item.normalized_name:
                for candidate in candidates.get((item.normalized_name, item.brand_key), ()):
                    if candidate.mapping_id in claimed:
                        continue
                    # A listing with its own id never takes over another id's mapping
                    if item.external_id and candidate.external_id is not None:
                        continue
                    ref = candidate
                    break
            matches.append(self._claim(ref, claimed))
        return matches

    @staticmethod
    def _claim(ref: MappingRef | None, claimed: set[int]) -> MappingRef | None:
        if ref is None or ref.mapping_id in claimed:
            return None
        claimed.add(ref.mapping_id)
        return ref
