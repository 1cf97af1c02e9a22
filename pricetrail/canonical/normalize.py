"""Identity normalization for scraped listings.

Normalization rules:
- Name: lowercase, Unicode NFKC, trademark symbols and punctuation removed,
  whitespace collapsed
- External id: trimmed, percent-decoded, Unicode NFC, lowercase
- URL: trimmed, fragment dropped, one trailing slash stripped
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation
from urllib.parse import unquote, urlsplit, urlunsplit

_TRADEMARKS = re.compile(r"[®™©]")
_NON_WORD = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

# Retailer url layouts that embed a stable product id
EXTERNAL_ID_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"-p-([a-zA-Z0-9]+)", re.IGNORECASE),
    re.compile(r"/proizvod/([a-zA-Z0-9_-]+)", re.IGNORECASE),
    re.compile(r"/product/([^/?#]+)(?:[/?#]|$)", re.IGNORECASE),
)

_QUANTITY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:ml|milliliters?|millilitres?)\b", re.IGNORECASE), "ml"),
    (re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:l|lt|liters?|litres?|litro)\b", re.IGNORECASE), "l"),
    (re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:kg|kilograms?|kilos?)\b", re.IGNORECASE), "kg"),
    (re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:g|gr|grams?)\b", re.IGNORECASE), "g"),
    (re.compile(r"(\d+)\s*(?:pcs|pieces|adet)\b", re.IGNORECASE), "pieces"),
)


def normalize_product_name(name: str | None) -> str:
    """Normalize a product name for identity matching.

    Args:
        name: Display name as scraped

    Returns:
        Lowercased name with symbols removed, or "" for empty input
    """
    if not name:
        return ""

    text = unicodedata.normalize("NFKC", name).lower()
    text = _TRADEMARKS.sub("", text)
    text = _NON_WORD.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def normalize_brand(brand: str | None) -> str:
    """Brand comparison key: casefolded and trimmed, "" when absent."""
    if not brand:
        return ""
    return _WHITESPACE.sub(" ", brand.strip()).casefold()


def normalize_external_id(external_id: str | None) -> str | None:
    """Normalize a retailer product identifier.

    Returns:
        Normalized id, or None when blank
    """
    if external_id is None:
        return None

    trimmed = str(external_id).strip()
    if not trimmed:
        return None

    try:
        decoded = unquote(trimmed, errors="strict")
    except UnicodeDecodeError:
        decoded = trimmed
    return unicodedata.normalize("NFC", decoded).lower()


def strip_one_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") and len(url) > 1 else url


def normalize_product_url(url: str) -> str:
    """Normalize a product url for identity matching.

    Query strings are kept: some retailers carry the product id there.
    """
    trimmed = url.strip()
    if not trimmed:
        return trimmed

    parts = urlsplit(trimmed)
    if parts.fragment:
        trimmed = urlunsplit(parts._replace(fragment=""))
    return strip_one_trailing_slash(trimmed)


def extract_external_id(
    url: str, patterns: tuple[re.Pattern[str], ...] = EXTERNAL_ID_PATTERNS
) -> str | None:
    """Extract a retailer product id embedded in a product url."""
    for pattern in patterns:
        match = pattern.search(url)
        if match and match.group(1):
            return normalize_external_id(match.group(1))
    return None


def extract_quantity(name: str | None) -> tuple[Decimal, str] | None:
    """Extract package size from a product name.

    Examples: "Milk 1.5L" -> (1.5, "l"), "Coffee 500 g" -> (500, "g")

    Returns:
        (quantity, unit) or None when no size is recognised
    """
    if not name:
        return None

    for pattern, unit in _QUANTITY_PATTERNS:
        match = pattern.search(name)
        if match:
            try:
                return Decimal(match.group(1).replace(",", ".")), unit
            except InvalidOperation:
                return None
    return None
