"""PriceTrail Pydantic models for type-safe data validation.

``Listing`` is the contract with the scraper collaborators; the remaining
models are the read-side shapes handed to reporting code.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Listing(BaseModel):
    """One scraped observation of a product on a retailer site."""

    retailer_id: int
    external_id: str | None = None
    url: str
    name: str
    brand: str | None = None
    category: str | None = None

    # Package size, e.g. unit="g", unit_quantity=500
    unit: str | None = None
    unit_quantity: Decimal | None = None

    price: Decimal
    currency: str
    original_price: Decimal | None = None
    is_on_sale: bool = False

    image_url: str | None = None
    observed_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "external_id", "brand", "category", "unit", "image_url", mode="before"
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("unit_quantity", "original_price", mode="before")
    @classmethod
    def blank_number_to_none(cls, v: Any) -> Any:
        if v == "" or v is None:
            return None
        return v

    @field_validator("url", "name")
    @classmethod
    def required_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return v

    @field_validator("price", "original_price")
    @classmethod
    def validate_price(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError("price must be non-negative")
        return v

    @field_validator("unit_quantity")
    @classmethod
    def validate_quantity(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError("unit_quantity must be non-negative")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "retailer_id": 6,
                "external_id": "102345",
                "url": "https://shop.example.me/proizvod/102345",
                "name": "Whole Milk 3.2% 1L",
                "brand": "Lazar",
                "unit": "l",
                "unit_quantity": "1",
                "price": "1.19",
                "currency": "EUR",
                "is_on_sale": False,
            }
        }
    }


class PricePoint(BaseModel):
    """A recorded price observation as exposed to reporting code."""

    price_id: int
    mapping_id: int
    price: Decimal
    currency: str
    original_price: Decimal | None = None
    is_on_sale: bool = False
    price_per_unit: Decimal | None = None
    observed_at: datetime

    # Filled only when a RateSnapshot is supplied and knows the currency
    price_eur: Decimal | None = None


class LatestRate(BaseModel):
    """Latest stored exchange rate for one currency."""

    currency_code: str
    rate_to_eur: Decimal
    source: str
    fetched_at: datetime | None = None
