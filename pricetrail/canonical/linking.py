"""Administrative canonical-product linking.

The pipeline never assigns or clears ``canonical_product_id`` itself; this
call is the only write path and applies the admin's choice verbatim.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.db.models import CanonicalProductModel, ProductModel
from pricetrail.errors import LinkTargetNotFound

logger = logging.getLogger(__name__)


async def link_canonical_product(
    session: AsyncSession,
    product_id: int,
    canonical_product_id: int | None,
) -> ProductModel:
    """Set or clear a product's canonical link.

    Args:
        session: Database session (caller commits)
        product_id: Product to link
        canonical_product_id: Canonical product, or None to unlink

    Returns:
        The updated product

    Raises:
        LinkTargetNotFound: If the product or canonical product does not exist
    """
    product = await session.get(ProductModel, product_id)
    if product is None:
        raise LinkTargetNotFound(f"Product {product_id} not found")

    if canonical_product_id is not None:
        canonical = await session.get(CanonicalProductModel, canonical_product_id)
        if canonical is None:
            raise LinkTargetNotFound(f"Canonical product {canonical_product_id} not found")

    previous = product.canonical_product_id
    product.canonical_product_id = canonical_product_id
    await session.flush()

    logger.info(
        f"Product {product_id} canonical link: {previous} -> {canonical_product_id}"
    )
    return product
