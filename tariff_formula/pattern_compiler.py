"""Deterministic compiler for the common shapes of tariff rate text.

Rules are tried in a fixed order and the first match wins:

1. free/zero ("Free", "None", "0%", "Free (A, AU, ...)")
2. ad valorem ("5%", "5 percent ad valorem")
3. bare percent
4. compound: one percent part plus one or two specific parts ("5% + 25¢/kg")
5. a single specific part ("$2.50/kg", "0.9 cents each")
6. percent range, using the lower bound ("5% - 10%")

Anything else yields :class:`NeedsFallback` so the caller can hand the text to
the generative compiler. Nothing in this module raises on bad input.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from tariff_formula.models import (
    METHOD_PATTERN,
    CompiledFormula,
    NeedsFallback,
    PatternOutcome,
    RateSpecification,
    zero_formula,
)
from tariff_formula.normalizer import format_number, normalize_rate_text
from tariff_formula.units import compact_unit, map_unit_to_variable

HUNDRED = Decimal("100")

_FREE_RE = re.compile(r"^(free|none|0%?)$")
_FREE_PREFIX_RE = re.compile(r"^free\b")
_AD_VALOREM_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:%|percent|per cent)\s*(?:ad valorem)?$")
_PERCENT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*%$")
_PERCENT_COMPONENT_RE = re.compile(
    r"^(\d+(?:\.\d+)?)\s*(?:%|percent|per cent)\s*(?:ad valorem)?"
    r"(?:\s+on\s+the\s+entire\s+(?:set|article|item))?$"
)
_RANGE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*%\s*(?:-|to)\s*(\d+(?:\.\d+)?)\s*%$")
_COMPOUND_SPLIT_RE = re.compile(r"\s*\+\s*")
_AMBIGUOUS_COMPONENT_RE = re.compile(r"\b(case|strap|band|bracelet|battery|movement|jewel|lead content)\b")
_EACH_STYLE_RE = re.compile(
    r"^([$¢])?\s*(\d+(?:\.\d+)?)\s*(¢|cents?)?\s*"
    r"(each|ea|item|items|article|articles|unit|units|piece|pieces|pr\.?|pair|pairs|doz\.?|dozen)"
    r"(?:\s+(?:on|of|for)\b.*)?$"
)
_PER_UNIT_RE = re.compile(
    r"^([$¢])?\s*(\d+(?:\.\d+)?)\s*(¢|cents?)?\s*(?:/|per)\s*"
    r"([a-z0-9.]+(?:\s+[a-z0-9.]+){0,2})"
    r"(?:\s*(?:/|per)\s*(\d+(?:\.\d+)?))?(?:\b|$)(?:\s+(?:on|of|for)\b.*)?$"
)
_NUMERIC_TOKEN_RE = re.compile(r"^\d+(?:\.\d+)?$")

CONFIDENCE_EXACT = 1.0
CONFIDENCE_SPECIFIC = 0.9
CONFIDENCE_RANGE = 0.7


def _decimal(text: str) -> Optional[Decimal]:
    try:
        return Decimal(text)
    except (InvalidOperation, TypeError):
        return None


def _ad_valorem(rate: Decimal, confidence: float) -> CompiledFormula:
    return CompiledFormula(
        formula=f"value * {format_number(rate)}",
        variables=("value",),
        confidence=confidence,
        method=METHOD_PATTERN,
    )


def _specific_amount(prefix: Optional[str], amount_text: str, suffix: Optional[str]) -> Decimal:
    amount = Decimal(amount_text)
    if prefix == "¢" or suffix:
        amount = amount / HUNDRED
    return amount


def parse_percent_component(text: str) -> Optional[Decimal]:
    """Return the fractional rate for a percent term, e.g. ``"5%"`` -> ``0.05``."""

    match = _PERCENT_COMPONENT_RE.match(text)
    if not match:
        return None
    return Decimal(match.group(1)) / HUNDRED


def parse_specific_component(
    text: str, unit_of_quantity: Optional[str] = None
) -> Optional[Tuple[str, Decimal]]:
    """Parse a per-unit duty such as ``"25¢/kg"`` into ``(variable, amount)``.

    Amounts carrying any cents marker are converted to dollars. A purely
    numeric unit (``"$1.34/1000"``) is a denominator and the variable is taken
    from the unit-of-quantity hint.
    """

    each_match = _EACH_STYLE_RE.match(text)
    if each_match:
        amount = _specific_amount(each_match.group(1), each_match.group(2), each_match.group(3))
        variable = map_unit_to_variable(each_match.group(4), unit_of_quantity) or "quantity"
        return variable, amount

    per_unit_match = _PER_UNIT_RE.match(text)
    if not per_unit_match:
        return None

    amount = _specific_amount(per_unit_match.group(1), per_unit_match.group(2), per_unit_match.group(3))
    token = (per_unit_match.group(4) or "").strip()
    denominator_text = (per_unit_match.group(5) or "").strip()

    if _NUMERIC_TOKEN_RE.match(token):
        denominator = _decimal(token)
        if denominator is not None and denominator > 0:
            amount = amount / denominator
        hint = compact_unit(unit_of_quantity)
        variable = map_unit_to_variable(hint, unit_of_quantity) if hint else None
        return variable or "quantity", amount

    if _NUMERIC_TOKEN_RE.match(denominator_text):
        denominator = _decimal(denominator_text)
        if denominator is not None and denominator > 0:
            amount = amount / denominator

    variable = map_unit_to_variable(token, unit_of_quantity)
    if not variable:
        return None
    return variable, amount


def _compile_compound(text: str, unit_of_quantity: Optional[str]) -> Optional[CompiledFormula]:
    parts = [part.strip() for part in _COMPOUND_SPLIT_RE.split(text) if part.strip()]
    if len(parts) < 2 or len(parts) > 3:
        return None
    # Components scoped to parts of an article (watch cases, straps, ...) need judgement.
    if _AMBIGUOUS_COMPONENT_RE.search(text):
        return None

    percent_parts = [
        (index, rate)
        for index, rate in ((index, parse_percent_component(part)) for index, part in enumerate(parts))
        if rate is not None
    ]
    if len(percent_parts) != 1:
        return None
    percent_index, ad_valorem_rate = percent_parts[0]

    terms: List[str] = []
    variables: List[str] = ["value"]
    for index, part in enumerate(parts):
        if index == percent_index:
            continue
        component = parse_specific_component(part, unit_of_quantity)
        if component is None:
            return None
        variable, amount = component
        terms.append(f"{variable} * {format_number(amount)}")
        if variable not in variables:
            variables.append(variable)

    return CompiledFormula(
        formula=f"value * {format_number(ad_valorem_rate)} + {' + '.join(terms)}",
        variables=tuple(variables),
        confidence=CONFIDENCE_SPECIFIC,
        method=METHOD_PATTERN,
    )


def _match_normalized(text: str, unit_of_quantity: Optional[str]) -> Optional[CompiledFormula]:
    if _FREE_RE.match(text) or _FREE_PREFIX_RE.match(text):
        return zero_formula()

    match = _AD_VALOREM_RE.match(text) or _PERCENT_RE.match(text)
    if match:
        return _ad_valorem(Decimal(match.group(1)) / HUNDRED, CONFIDENCE_EXACT)

    compound = _compile_compound(text, unit_of_quantity)
    if compound is not None:
        return compound

    component = parse_specific_component(text, unit_of_quantity)
    if component is not None:
        variable, amount = component
        return CompiledFormula(
            formula=f"{variable} * {format_number(amount)}",
            variables=(variable,),
            confidence=CONFIDENCE_SPECIFIC,
            method=METHOD_PATTERN,
        )

    match = _RANGE_RE.match(text)
    if match:
        return _ad_valorem(Decimal(match.group(1)) / HUNDRED, CONFIDENCE_RANGE)

    return None


def compile_pattern(spec: RateSpecification) -> PatternOutcome:
    """Compile ``spec`` deterministically, or signal that a fallback is needed."""

    if not spec.text or not spec.text.strip():
        return zero_formula()
    compiled = _match_normalized(normalize_rate_text(spec.text), spec.unit_of_quantity)
    if compiled is None:
        return NeedsFallback(text=spec.text, unit_of_quantity=spec.unit_of_quantity)
    return compiled


def generate_formula_by_pattern(
    rate_text: Optional[str], unit_of_quantity: Optional[str] = None
) -> Optional[CompiledFormula]:
    outcome = compile_pattern(RateSpecification(text=rate_text or "", unit_of_quantity=unit_of_quantity))
    if isinstance(outcome, NeedsFallback):
        return None
    return outcome
