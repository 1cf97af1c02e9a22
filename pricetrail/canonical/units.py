"""Per-unit price normalization.

Mass units normalize to kilogram, volume units to liter. Anything else
(count-based, unknown, missing or zero quantity) has no per-unit price.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

# unit -> (canonical unit, how many of `unit` make one canonical unit)
UNIT_SCALES: dict[str, tuple[str, Decimal]] = {
    # mass
    "mg": ("kg", Decimal("1000000")),
    "g": ("kg", Decimal("1000")),
    "gr": ("kg", Decimal("1000")),
    "gram": ("kg", Decimal("1000")),
    "grams": ("kg", Decimal("1000")),
    "kg": ("kg", Decimal("1")),
    "kilo": ("kg", Decimal("1")),
    "kilos": ("kg", Decimal("1")),
    "kilogram": ("kg", Decimal("1")),
    "kilograms": ("kg", Decimal("1")),
    # volume
    "ml": ("l", Decimal("1000")),
    "cl": ("l", Decimal("100")),
    "dl": ("l", Decimal("10")),
    "l": ("l", Decimal("1")),
    "lt": ("l", Decimal("1")),
    "liter": ("l", Decimal("1")),
    "liters": ("l", Decimal("1")),
    "litre": ("l", Decimal("1")),
    "litres": ("l", Decimal("1")),
}

PER_UNIT_PRECISION = Decimal("0.0001")


def _as_decimal(value: Decimal | float | int | str | None) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def canonical_unit(unit: str | None) -> str | None:
    """Return "kg" or "l" for a recognised unit, else None."""
    if not unit:
        return None
    scale = UNIT_SCALES.get(unit.strip().lower())
    return scale[0] if scale else None


def price_per_unit(
    price: Decimal | float | int | str | None,
    quantity: Decimal | float | int | str | None,
    unit: str | None,
) -> Decimal | None:
    """Price per kilogram or liter.

    result = price * (canonical scale / quantity in the listed unit),
    so 500 g at 4.00 gives 4.00 * (1000 / 500) = 8.00 per kg.

    Args:
        price: Absolute shelf price
        quantity: Package size in `unit`
        unit: Package unit as scraped ("g", "ml", "kg", "piece", ...)

    Returns:
        Per-unit price, or None when it cannot be computed. Callers fall
        back to the absolute price; None is never a zero.
    """
    if not unit:
        return None

    scale = UNIT_SCALES.get(unit.strip().lower())
    if scale is None:
        return None

    amount = _as_decimal(price)
    qty = _as_decimal(quantity)
    if amount is None or qty is None:
        return None
    if not (amount.is_finite() and qty.is_finite()) or qty <= 0:
        return None

    _, units_per_canonical = scale
    return (amount * (units_per_canonical / qty)).quantize(PER_UNIT_PRECISION)
