"""Map unit-of-quantity tokens onto the three formula variables."""

from __future__ import annotations

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

WEIGHT_UNITS = frozenset(
    {
        "kg", "kgs", "kilogram", "kilograms", "gram", "grams", "lb", "lbs", "pound", "pounds",
        "oz", "ounce", "ounces", "ton", "tons", "tonne", "tonnes",
    }
)
# "cent" is a currency word rather than a count, but a "/cent" denominator still maps to quantity.
QUANTITY_UNITS = frozenset(
    {
        "ea", "each", "unit", "units", "piece", "pieces", "item", "items", "article", "articles",
        "number", "no", "doz", "dozen", "pair", "pairs", "pr", "set", "sets", "gross", "cent",
    }
)
VOLUME_UNITS = frozenset(
    {
        "l", "liter", "liters", "litre", "litres", "ml", "milliliter", "milliliters",
        "gal", "gallon", "gallons", "qt", "quart", "quarts",
    }
)
# "proof liter" only collapses to a known unit once spaces and dots are gone.
COMPACT_VOLUME_UNITS = VOLUME_UNITS | {"proofliter", "proofliters", "pfliter", "pfliters"}
AREA_UNITS = frozenset(
    {"sqm", "m2", "square meter", "square meters", "sqft", "square foot", "square feet"}
)
LENGTH_UNITS = frozenset(
    {
        "m", "meter", "meters", "cm", "centimeter", "centimeters", "mm", "millimeter", "millimeters",
        "ft", "foot", "feet", "in", "inch", "inches", "yd", "yard", "yards",
    }
)

_QUALIFIER_RE = re.compile(r"\b(clean|net|gross|drained|proof|pf\.?)\b")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_WHITESPACE_RE = re.compile(r"\s+")


def compact_unit(token: Optional[str]) -> str:
    return _NON_ALNUM_RE.sub("", (token or "").lower())


def map_unit_to_variable(unit: str, unit_of_quantity: Optional[str] = None) -> Optional[str]:
    """Return ``weight``/``quantity`` for a recognised unit token, else ``None``.

    Every form of the token is tried: as written, with punctuation and spaces
    removed, and both again with weight qualifiers ("net", "drained", "proof")
    stripped. Volume, area and length units count as quantity. A token that
    contains the schedule's own unit-of-quantity hint is also quantity.
    """

    normalized = (unit or "").lower().strip()
    without_qualifiers = _WHITESPACE_RE.sub(" ", _QUALIFIER_RE.sub(" ", normalized)).strip()
    compact = compact_unit(normalized)
    compact_without_qualifiers = compact_unit(without_qualifiers)
    forms = (normalized, compact, without_qualifiers, compact_without_qualifiers)

    if any(form in WEIGHT_UNITS for form in forms):
        return "weight"
    if any(form in QUANTITY_UNITS for form in forms):
        return "quantity"
    if normalized in VOLUME_UNITS or without_qualifiers in VOLUME_UNITS:
        return "quantity"
    if compact in COMPACT_VOLUME_UNITS or compact_without_qualifiers in COMPACT_VOLUME_UNITS:
        return "quantity"
    if normalized in AREA_UNITS or normalized in LENGTH_UNITS:
        return "quantity"

    hint = compact_unit(unit_of_quantity)
    if hint and (hint in compact or hint in compact_without_qualifiers):
        return "quantity"

    logger.warning("Unknown unit %r, unable to map to a formula variable", unit)
    return None
