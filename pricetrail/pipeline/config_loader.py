"""Configuration loader for retailer scrapers.

Loads retailer configurations from YAML and instantiates the registered
scraper for each one.

Example::

    retailers:
      - id: 6
        name: Voli
        type: file
        currency: EUR
        country_code: ME
        base_url: https://voli.me
        config:
          file_path: data/voli.csv
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from pricetrail.pipeline.base_scraper import BaseScraper

logger = logging.getLogger(__name__)


# Scraper registry (maps type to class)
SCRAPER_REGISTRY: dict[str, type[BaseScraper]] = {}


def register_scraper(scraper_type: str):
    """Decorator to register scraper classes.

    Usage:
        @register_scraper("file")
        class FileScraper(BaseScraper):
            ...
    """

    def decorator(cls):
        SCRAPER_REGISTRY[scraper_type] = cls
        return cls

    return decorator


def load_retailer_config(config_path: Path) -> list[BaseScraper]:
    """Load retailer configuration and instantiate scrapers.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        List of configured scraper instances

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Retailer config not found: {config_path}")

    with open(config_path) as f:
        config = yaml.safe_load(f)

    if not config or "retailers" not in config:
        raise ValueError("Invalid retailer config: missing 'retailers' section")

    # Built-in scrapers register themselves on import
    import pricetrail.pipeline.scrapers.file_scraper  # noqa: F401

    scrapers = []
    seen_ids: set[int] = set()

    for retailer_config in config["retailers"]:
        if not retailer_config.get("enabled", True):
            logger.info(f"Skipping disabled retailer: {retailer_config.get('name')}")
            continue

        try:
            scraper = _create_scraper(retailer_config)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to load retailer {retailer_config.get('name')}: {e}")
            continue

        if scraper.retailer_id in seen_ids:
            raise ValueError(f"Duplicate retailer id in config: {scraper.retailer_id}")
        seen_ids.add(scraper.retailer_id)

        scrapers.append(scraper)
        logger.info(f"Loaded scraper: {scraper.name} ({retailer_config['type']})")

    logger.info(f"Loaded {len(scrapers)} scrapers from config")

    return scrapers


def _create_scraper(retailer_config: dict) -> BaseScraper:
    """Create scraper instance from config.

    Raises:
        ValueError: If scraper type is unknown or id is missing
    """
    scraper_type = retailer_config.get("type")
    name = retailer_config.get("name")

    if not scraper_type:
        raise ValueError(f"Retailer {name} missing 'type' field")
    if retailer_config.get("id") is None:
        raise ValueError(f"Retailer {name} missing 'id' field")

    cls = SCRAPER_REGISTRY.get(scraper_type)
    if cls is None:
        raise ValueError(f"Unknown scraper type: {scraper_type}")

    return cls(
        retailer_id=int(retailer_config["id"]),
        name=name or f"retailer-{retailer_config['id']}",
        config=retailer_config.get("config") or {},
        currency=retailer_config.get("currency", "EUR"),
        country_code=retailer_config.get("country_code"),
        base_url=retailer_config.get("base_url"),
    )
