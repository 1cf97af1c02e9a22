"""File-based scraper for exported listing feeds.

Reads CSV or JSON-lines exports so a retailer can be ingested without
site-specific extraction code.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pandas as pd

from pricetrail.pipeline.base_scraper import BaseScraper
from pricetrail.pipeline.config_loader import register_scraper

logger = logging.getLogger(__name__)

LISTING_FIELDS = (
    "external_id",
    "url",
    "name",
    "brand",
    "category",
    "unit",
    "unit_quantity",
    "price",
    "currency",
    "original_price",
    "is_on_sale",
    "image_url",
    "observed_at",
)


@register_scraper("file")
class FileScraper(BaseScraper):
    """Yield listings from a CSV or JSON-lines file.

    Configuration:
    - file_path: Path to .csv, .jsonl or .ndjson file
    - column_mapping: Optional dict mapping file columns to listing fields

    Example config:
        {
            "file_path": "data/voli.csv",
            "column_mapping": {"Artikal": "name", "Cijena": "price", "Link": "url"}
        }
    """

    async def fetch_listings(self) -> AsyncIterator[dict[str, Any]]:
        file_path = Path(self._get_config_value("file_path", required=True))
        column_mapping = self._get_config_value("column_mapping", {}) or {}

        if not file_path.exists():
            raise FileNotFoundError(f"Listing file not found: {file_path}")

        suffix = file_path.suffix.lower()
        # Keep ids like "00123" intact
        if suffix == ".csv":
            df = pd.read_csv(file_path, dtype=str, keep_default_na=False)
        elif suffix in (".jsonl", ".ndjson"):
            df = pd.read_json(file_path, lines=True, dtype=False)
        else:
            raise ValueError(f"Unsupported file format: {file_path.suffix}")

        if column_mapping:
            df = df.rename(columns=column_mapping)

        self.logger.info(f"Read {len(df)} rows from {file_path}")

        for row in df.to_dict(orient="records"):
            yield self._row_to_listing(row)

    def _row_to_listing(self, row: dict[str, Any]) -> dict[str, Any]:
        """Keep known listing fields, dropping NaN cells."""
        listing: dict[str, Any] = {}
        for field in LISTING_FIELDS:
            value = row.get(field)
            if value is None or (not isinstance(value, str) and pd.isna(value)):
                continue
            listing[field] = value

        on_sale = listing.get("is_on_sale")
        if isinstance(on_sale, str):
            listing["is_on_sale"] = on_sale.strip().lower() in ("1", "true", "yes", "y")

        return listing
