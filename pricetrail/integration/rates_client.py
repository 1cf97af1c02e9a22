"""Frankfurter (ECB) exchange-rate API client."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pricetrail.config import RatesConfig
from pricetrail.errors import RateFetchFailure

logger = logging.getLogger(__name__)


class FrankfurterClient:
    """Fetch EUR-based rates and express them as EUR per unit of currency.

    The API answers "units of currency per 1 EUR"; every rate is inverted
    before it leaves this client.
    """

    source = "frankfurter"

    def __init__(
        self,
        config: RatesConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or RatesConfig()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            headers={"Accept": "application/json"},
        )

    async def fetch_rates(self, currencies: Iterable[str]) -> dict[str, Decimal]:
        """Fetch current rates for ``currencies``.

        Currencies the source does not publish are simply absent from the result.

        Returns:
            currency code -> EUR per unit

        Raises:
            RateFetchFailure: If the source is unreachable after retries or
                answers with something unusable
        """
        wanted = sorted({c.upper() for c in currencies if c.upper() != "EUR"})
        if not wanted:
            return {}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.retry_attempts),
                wait=wait_exponential(multiplier=1, min=self.config.retry_backoff_base, max=10),
                retry=retry_if_exception_type((httpx.RequestError, httpx.HTTPStatusError)),
                reraise=True,
            ):
                with attempt:
                    response = await self.client.get(
                        "/latest", params={"from": "EUR", "to": ",".join(wanted)}
                    )
                    response.raise_for_status()
                    data = response.json()
        except httpx.HTTPStatusError as exc:
            raise RateFetchFailure(
                f"Rate API error: {exc.response.status_code} {exc.response.text[:200]}"
            ) from exc
        except (httpx.RequestError, RetryError) as exc:
            raise RateFetchFailure(f"Rate API request failed: {exc}") from exc
        except ValueError as exc:
            raise RateFetchFailure(f"Rate API returned invalid JSON: {exc}") from exc

        return self._parse(data)

    def _parse(self, data: dict) -> dict[str, Decimal]:
        raw_rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(raw_rates, dict):
            raise RateFetchFailure("Rate API response has no 'rates' object")

        logger.info(f"Rate API response for {data.get('date')}: {raw_rates}")

        rates: dict[str, Decimal] = {}
        for currency, per_eur in raw_rates.items():
            try:
                value = Decimal(str(per_eur))
            except InvalidOperation:
                logger.warning(f"Ignoring non-numeric rate for {currency}: {per_eur!r}")
                continue
            if not value.is_finite() or value <= 0:
                logger.warning(f"Ignoring non-positive rate for {currency}: {per_eur!r}")
                continue
            rates[currency.upper()] = Decimal(1) / value
        return rates

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> FrankfurterClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
