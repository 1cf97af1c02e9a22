"""Per-retailer mutual exclusion between ingestion and reconciliation.

PostgreSQL uses a session-level advisory lock on a dedicated connection, so
it holds across processes and across the many short transactions of one
retailer run. Other dialects only get an in-process lock.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from pricetrail.errors import RetailerBusy

logger = logging.getLogger(__name__)

# First key of the two-key advisory lock, keeps retailer ids out of other lock spaces
LOCK_NAMESPACE = 0x5052  # "PR"

# asyncio.Lock binds to the loop it is first used on; entries go with their loop
_local_locks: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[int, asyncio.Lock]
] = weakref.WeakKeyDictionary()


def _local_lock(retailer_id: int) -> asyncio.Lock:
    locks = _local_locks.setdefault(asyncio.get_running_loop(), {})
    lock = locks.get(retailer_id)
    if lock is None:
        lock = locks[retailer_id] = asyncio.Lock()
    return lock


@asynccontextmanager
async def retailer_lock(
    engine: AsyncEngine, retailer_id: int, wait: bool = True
) -> AsyncIterator[None]:
    """Hold the retailer lock for the duration of the block.

    Args:
        engine: Engine of the store being mutated
        retailer_id: Retailer to lock
        wait: Block until the lock is free; when False raise immediately

    Raises:
        RetailerBusy: If wait is False and another holder has the lock
    """
    if engine.dialect.name == "postgresql":
        async with engine.connect() as conn:
            params = {"ns": LOCK_NAMESPACE, "rid": retailer_id}
            if wait:
                await conn.execute(text("SELECT pg_advisory_lock(:ns, :rid)"), params)
            else:
                acquired = (
                    await conn.execute(
                        text("SELECT pg_try_advisory_lock(:ns, :rid)"), params
                    )
                ).scalar()
                if not acquired:
                    raise RetailerBusy(retailer_id)
            # Session-level lock survives the end of this implicit transaction
            await conn.commit()
            logger.debug(f"Advisory lock taken for retailer {retailer_id}")
            try:
                yield
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(:ns, :rid)"), params)
                await conn.commit()
        return

    lock = _local_lock(retailer_id)
    if not wait and lock.locked():
        raise RetailerBusy(retailer_id)
    async with lock:
        yield
