"""Exchange-rate synchronization job.

Rates are EUR per unit of currency and are only ever appended; the latest
value per currency is read through the ``latest_exchange_rates`` view.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from pricetrail.config import RatesConfig
from pricetrail.db.models import ExchangeRateModel
from pricetrail.db.price_queries import get_latest_rates
from pricetrail.errors import RateFetchFailure
from pricetrail.models import utcnow

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"

# How many EUR for 1 unit of currency; used when the source is unreachable
# or omits a currency
FALLBACK_EXCHANGE_RATES: dict[str, Decimal] = {
    "EUR": Decimal("1"),
    "TRY": Decimal("0.01992512"),
    "UZS": Decimal("0.00007202"),
    "UAH": Decimal("0.01983600"),
    "KZT": Decimal("0.00168442"),
    "USD": Decimal("0.86169064"),
}

TRACKED_CURRENCIES: tuple[str, ...] = tuple(
    code for code in FALLBACK_EXCHANGE_RATES if code != "EUR"
)


class RateSource(Protocol):
    source: str

    async def fetch_rates(self, currencies) -> dict[str, Decimal]: ...


@dataclass(frozen=True)
class RateAnomaly:
    """A rate that moved more than the threshold since the previous sync."""

    currency_code: str
    previous_rate: Decimal
    new_rate: Decimal
    change: Decimal  # fraction, 0.15 == 15%


@dataclass
class RateSyncResult:
    """Outcome of one sync."""

    fetched_at: datetime
    rates: dict[str, Decimal] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)
    anomalies: list[RateAnomaly] = field(default_factory=list)
    used_fallback: bool = False  # source unusable, fallback table used wholesale
    error: str | None = None

    @property
    def rows_written(self) -> int:
        return len(self.rates)


def detect_anomalies(
    new_rates: dict[str, Decimal],
    previous_rates: dict[str, Decimal],
    threshold: Decimal,
) -> list[RateAnomaly]:
    """Compare new rates to the previous stored ones; never blocks a write."""
    anomalies = []
    for currency, new_rate in sorted(new_rates.items()):
        old_rate = previous_rates.get(currency)
        if not old_rate or old_rate <= 0:
            continue
        change = abs((new_rate - old_rate) / old_rate)
        if change > threshold:
            anomalies.append(RateAnomaly(currency, old_rate, new_rate, change))
    return anomalies


class ExchangeRateSync:
    """Fetch, merge over the fallback floor, check and append rates."""

    def __init__(
        self,
        client: RateSource,
        config: RatesConfig | None = None,
        fallback_rates: dict[str, Decimal] | None = None,
    ):
        self.client = client
        self.config = config or RatesConfig()
        self.fallback_rates = dict(fallback_rates or FALLBACK_EXCHANGE_RATES)

    async def sync(self, session: AsyncSession, now: datetime | None = None) -> RateSyncResult:
        """Append one row per tracked currency.

        A fetch failure is logged and the fallback table is used wholesale.

        Returns:
            RateSyncResult with the rates written and any anomalies
        """
        logger.info("Starting exchange rate synchronization")
        result = RateSyncResult(fetched_at=now or utcnow())

        previous = {
            rate.currency_code: rate.rate_to_eur for rate in await get_latest_rates(session)
        }

        tracked = [code for code in self.fallback_rates if code != "EUR"]
        try:
            fetched = await self.client.fetch_rates(tracked)
        except RateFetchFailure as e:
            logger.warning(f"Exchange rate fetch failed, using fallback rates: {e}")
            fetched = {}
            result.used_fallback = True
            result.error = str(e)

        for currency, fallback in self.fallback_rates.items():
            rate = fetched.get(currency)
            if currency == "EUR" and not result.used_fallback:
                rate = Decimal("1")
            if rate is not None and rate > 0:
                result.rates[currency] = rate
                result.sources[currency] = self.client.source
            else:
                result.rates[currency] = fallback
                result.sources[currency] = FALLBACK_SOURCE

        missing = [c for c in tracked if result.sources[c] == FALLBACK_SOURCE]
        if missing and not result.used_fallback:
            logger.info(f"Source omitted {', '.join(missing)}; fallback rates used for them")

        result.anomalies = detect_anomalies(
            result.rates, previous, self.config.anomaly_threshold
        )
        for anomaly in result.anomalies:
            logger.warning(
                f"Large rate change detected for {anomaly.currency_code}: "
                f"{anomaly.previous_rate:.10f} -> {anomaly.new_rate:.10f} "
                f"({anomaly.change * 100:.2f}% change)"
            )

        await session.execute(
            insert(ExchangeRateModel),
            [
                {
                    "currency_code": currency,
                    "rate_to_eur": rate,
                    "source": result.sources[currency],
                    "fetched_at": result.fetched_at,
                }
                for currency, rate in result.rates.items()
            ],
        )

        logger.info(
            f"Exchange rate sync completed: {result.rows_written} rates, "
            f"{len(result.anomalies)} anomalies, fallback={result.used_fallback}"
        )
        return result
