"""Explicit exchange-rate snapshots.

Code that converts prices is handed a ``RateSnapshot``; a ``RateProvider``
decides when a new one is read from the store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType

from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.db.price_queries import get_latest_rates
from pricetrail.integration.exchange_rates import FALLBACK_EXCHANGE_RATES, FALLBACK_SOURCE

logger = logging.getLogger(__name__)

EUR_PRECISION = Decimal("0.01")


@dataclass(frozen=True)
class RateSnapshot:
    """Immutable EUR-per-unit rates at one point in time."""

    rates: Mapping[str, Decimal]
    sources: Mapping[str, str] = field(default_factory=dict)
    loaded_at: datetime | None = None

    @classmethod
    def from_rows(
        cls,
        rows: Mapping[str, tuple[Decimal, str]],
        fallback: Mapping[str, Decimal] = FALLBACK_EXCHANGE_RATES,
        loaded_at: datetime | None = None,
    ) -> RateSnapshot:
        """Merge stored rates over the fallback table."""
        rates = dict(fallback)
        sources = {code: FALLBACK_SOURCE for code in fallback}
        for code, (rate, source) in rows.items():
            if rate is not None and rate > 0:
                rates[code] = Decimal(rate)
                sources[code] = source
        return cls(
            rates=MappingProxyType(rates),
            sources=MappingProxyType(sources),
            loaded_at=loaded_at,
        )

    def rate_for(self, currency: str) -> Decimal | None:
        """EUR per unit of ``currency``, or None when it is unknown."""
        return self.rates.get(currency.upper())

    def to_eur(self, amount: Decimal | None, currency: str) -> Decimal | None:
        if amount is None:
            return None
        rate = self.rate_for(currency)
        if rate is None:
            return None
        return (Decimal(amount) * rate).quantize(EUR_PRECISION)


async def load_rate_snapshot(session: AsyncSession) -> RateSnapshot:
    """Read the latest stored rates, floored by the fallback table."""
    latest = await get_latest_rates(session)
    return RateSnapshot.from_rows(
        {rate.currency_code: (rate.rate_to_eur, rate.source) for rate in latest},
        loaded_at=max((r.fetched_at for r in latest if r.fetched_at), default=None),
    )


class RateProvider:
    """Hand out rate snapshots, reloading them after ``max_age_seconds``.

    Usage:
        provider = RateProvider(max_age_seconds=3600)
        snapshot = await provider.get(session)
    """

    def __init__(
        self,
        max_age_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._snapshot: RateSnapshot | None = None
        self._loaded: float | None = None

    def is_stale(self) -> bool:
        if self._snapshot is None or self._loaded is None:
            return True
        return self._clock() - self._loaded >= self.max_age_seconds

    async def get(self, session: AsyncSession) -> RateSnapshot:
        """Current snapshot, reloaded from ``session`` when stale."""
        if self.is_stale():
            self._snapshot = await load_rate_snapshot(session)
            self._loaded = self._clock()
            logger.debug(f"Loaded rate snapshot with {len(self._snapshot.rates)} currencies")
        return self._snapshot

    def invalidate(self) -> None:
        """Force the next get() to reload, e.g. right after a rate sync."""
        self._snapshot = None
        self._loaded = None
