"""Base class for all retailer scrapers.

Page fetching and HTML extraction live in the scraper implementations; the
pipeline only consumes the listings they yield.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pricetrail.models import Listing


class BaseScraper(ABC):
    """Abstract base class for retailer scrapers.

    Key principles:
    1. Each scraper handles exactly ONE retailer
    2. Scrapers are stateless between runs and can be retried
    3. Listings may be yielded as ``Listing`` objects or plain dicts;
       the pipeline validates dicts and fills ``retailer_id`` and
       ``currency`` from the scraper when they are missing
    """

    def __init__(
        self,
        retailer_id: int,
        name: str,
        config: dict,
        currency: str = "EUR",
        country_code: str | None = None,
        base_url: str | None = None,
    ):
        """Initialize scraper.

        Args:
            retailer_id: Stable retailer id (primary key of the retailers table)
            name: Display name of the retailer
            config: Scraper-specific settings
            currency: Currency the retailer prices in
            country_code: ISO 3166 alpha-2 country
            base_url: Retailer home page
        """
        self.retailer_id = retailer_id
        self.name = name
        self.config = config
        self.currency = currency.upper()
        self.country_code = country_code
        self.base_url = base_url
        self.logger = logging.getLogger(f"{__name__}.{name}")

    async def initialize(self) -> None:
        """Acquire resources (browser, http client) before a run."""

    async def cleanup(self) -> None:
        """Release resources acquired in initialize()."""

    @abstractmethod
    def fetch_listings(self) -> AsyncIterator[Listing | dict[str, Any]]:
        """Yield the listings currently published by the retailer.

        Raises:
            Exception: Any error during fetch (fails the retailer run)
        """

    def _get_config_value(self, key: str, default=None, required: bool = False):
        """Get configuration value with validation.

        Raises:
            ValueError: If required key is missing
        """
        value = self.config.get(key, default)

        if required and value is None:
            raise ValueError(f"Required config key '{key}' missing for {self.name}")

        return value
