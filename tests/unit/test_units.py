"""Unit tests for per-unit price normalization."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pricetrail.canonical.units import canonical_unit, price_per_unit


class TestPricePerUnit:
    """Mass normalizes to kg, volume to l, everything else has no per-unit price."""

    def test_grams_to_kilogram(self):
        """500 g at 4.00 costs 8.00 per kg."""
        assert price_per_unit(Decimal("4.00"), Decimal("500"), "g") == Decimal("8.00")

    def test_piece_has_no_per_unit_price(self):
        assert price_per_unit(Decimal("4.00"), Decimal("6"), "piece") is None

    @pytest.mark.parametrize(
        ("price", "quantity", "unit", "expected"),
        [
            ("2.50", "1", "kg", "2.5000"),
            ("1.20", "250", "ml", "4.8000"),
            ("3.00", "1.5", "l", "2.0000"),
            ("0.99", "33", "cl", "3.0000"),
            ("5.00", "250", "GR", "20.0000"),
        ],
    )
    def test_supported_units(self, price, quantity, unit, expected):
        assert price_per_unit(Decimal(price), Decimal(quantity), unit) == Decimal(expected)

    def test_result_is_quantized_to_four_places(self):
        result = price_per_unit(Decimal("1.00"), Decimal("3"), "kg")

        assert result == Decimal("0.3333")

    @pytest.mark.parametrize("quantity", [None, Decimal("0"), Decimal("-1")])
    def test_missing_or_non_positive_quantity(self, quantity):
        assert price_per_unit(Decimal("4.00"), quantity, "g") is None

    @pytest.mark.parametrize("unit", [None, "", "pcs", "pack", "m"])
    def test_unknown_or_missing_unit(self, unit):
        assert price_per_unit(Decimal("4.00"), Decimal("500"), unit) is None

    def test_zero_price_is_a_real_value(self):
        assert price_per_unit(Decimal("0"), Decimal("500"), "g") == Decimal("0")

    def test_accepts_plain_numbers(self):
        assert price_per_unit(4, "500", "g") == Decimal("8.0000")

    def test_non_numeric_input(self):
        assert price_per_unit("n/a", Decimal("500"), "g") is None


class TestCanonicalUnit:
    def test_mass_and_volume(self):
        assert canonical_unit("g") == "kg"
        assert canonical_unit(" Litre ") == "l"

    def test_unknown(self):
        assert canonical_unit("piece") is None
        assert canonical_unit(None) is None
