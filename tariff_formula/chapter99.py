"""Resolve Chapter 99 cross references and compose adjusted formulas.

A schedule line points at additional-duty headings (9903.88.15, ...) through
its stored links and its footnotes. One of those headings is selected, its
extra ad valorem rate is layered onto the line's base formula, and the
countries it targets are read from the heading itself.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from tariff_formula.formula_validator import extract_variables
from tariff_formula.models import (
    SOURCE_FOOTNOTES_KEY,
    STATUS_LINKED,
    STATUS_NONE,
    STATUS_UNRESOLVED,
    AdjustmentResult,
    ScheduleEntry,
    SelectedReference,
    merge_variable_descriptors,
)
from tariff_formula.normalizer import format_number
from tariff_formula.pattern_compiler import HUNDRED, generate_formula_by_pattern

logger = logging.getLogger(__name__)

DEFAULT_NON_NTR_COUNTRIES = ("CU", "KP", "RU", "BY")

REASON_HEADING_NOT_FOUND = "linked chapter99 heading not found"
REASON_BASE_UNAVAILABLE = "base general formula unavailable"

CHAPTER99_CODE_RE = re.compile(r"\b(99\d{2}\.\d{2}\.\d{2}(?:\.\d{2})?)\b")
_CHAPTER99_FULL_RE = re.compile(r"^99\d{2}\.\d{2}\.\d{2}(?:\.\d{2})?$")
_PASS_THROUGH_RE = re.compile(r"duty provided in the applicable subheading", re.IGNORECASE)
_PLUS_PERCENT_RE = re.compile(r"(?:\+|plus)\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)
_VALUE_MULTIPLIER_RE = re.compile(r"value\s*\*\s*([0-9.]+)", re.IGNORECASE)
_PRODUCT_OF_RES = (
    re.compile(r"\b(?:product|products|articles)\s+(?:the\s+)?product\s+of\s+([^,.;]+)", re.IGNORECASE),
    re.compile(r"\bproduct\s+of\s+([^,.;]+)", re.IGNORECASE),
)
_COUNTRY_SPLIT_RE = re.compile(r",| and | or ", re.IGNORECASE)
_COUNTRY_PUNCT_RE = re.compile(r"[^\w\s']")
_WHITESPACE_RE = re.compile(r"\s+")

COUNTRY_ALIASES: Dict[str, str] = {
    "china": "CN",
    "people's republic of china": "CN",
    "peoples republic of china": "CN",
    "prc": "CN",
    "russia": "RU",
    "russian federation": "RU",
    "belarus": "BY",
    "north korea": "KP",
    "democratic people's republic of korea": "KP",
    "democratic peoples republic of korea": "KP",
    "dprk": "KP",
    "cuba": "CU",
}


# --- link extraction --------------------------------------------------------


def _fragment_text(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping) and isinstance(item.get("value"), str):
        return item["value"]
    return None


def extract_codes_from_text(value: str) -> List[str]:
    """Find every Chapter 99 code in raw footnote text.

    Text that looks like a JSON array is also decoded and each fragment's
    ``value`` is scanned; undecodable JSON is scanned as plain text only.
    """

    if not value:
        return []
    texts = [value]
    trimmed = value.strip()
    if trimmed.startswith("["):
        try:
            parsed = json.loads(trimmed)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            texts.extend(text for text in (_fragment_text(item) for item in parsed) if text)
    codes: List[str] = []
    for text in texts:
        codes.extend(match.group(1) for match in CHAPTER99_CODE_RE.finditer(text))
    return codes


def _footnote_payloads(footnotes: Any) -> List[str]:
    if not footnotes:
        return []
    if isinstance(footnotes, str):
        return [footnotes]
    if isinstance(footnotes, (list, tuple)):
        return [text for text in (_fragment_text(item) for item in footnotes) if text]
    return [json.dumps(footnotes)]


def extract_chapter99_links(entry: ScheduleEntry) -> List[str]:
    refs = {link for link in entry.chapter99_links or [] if link and link.startswith("99")}

    payloads = _footnote_payloads(entry.footnotes)
    source_footnotes = (entry.metadata or {}).get(SOURCE_FOOTNOTES_KEY)
    if isinstance(source_footnotes, list):
        payloads.extend(text for text in (_fragment_text(item) for item in source_footnotes) if text)

    for payload in payloads:
        refs.update(code for code in extract_codes_from_text(payload) if code.startswith("99"))
    return sorted(refs)


def normalize_chapter99_links(links: Optional[Iterable[str]]) -> List[str]:
    cleaned = ((link or "").strip() for link in links or [])
    return sorted({link for link in cleaned if _CHAPTER99_FULL_RE.match(link)})


def normalize_footnote_payload(payload: Any) -> Optional[str]:
    if not payload:
        return None
    if isinstance(payload, str):
        return payload.strip() or None
    if isinstance(payload, (list, tuple)):
        chunks = [text.strip() for text in (_fragment_text(item) for item in payload) if text and text.strip()]
        if chunks:
            return " ".join(chunks)
    return json.dumps(payload, default=str)


def extract_chapter99_links_from_footnote_payload(payload: Any) -> List[str]:
    """Codes referenced by a raw footnote payload (string, fragment list or other JSON)."""

    footnotes = normalize_footnote_payload(payload)
    if not footnotes:
        return []
    return normalize_chapter99_links(extract_codes_from_text(footnotes))


# --- country sets -----------------------------------------------------------


def normalize_country_codes(codes: Optional[Iterable[str]]) -> List[str]:
    cleaned = ((code or "").upper().strip() for code in codes or [])
    return sorted({code for code in cleaned if len(code) >= 2})


def resolve_non_ntr_countries(existing: Optional[Sequence[str]]) -> List[str]:
    return normalize_country_codes(existing if existing else DEFAULT_NON_NTR_COUNTRIES)


def same_string_list(left: Optional[Sequence[str]], right: Optional[Sequence[str]]) -> bool:
    return sorted(left or []) == sorted(right or [])


def _country_from_token(token: str) -> Optional[str]:
    normalized = _WHITESPACE_RE.sub(" ", _COUNTRY_PUNCT_RE.sub(" ", token.lower())).strip()
    if not normalized:
        return None
    return COUNTRY_ALIASES.get(normalized)


def infer_applicable_countries(entry: ScheduleEntry) -> Optional[List[str]]:
    """Countries a Chapter 99 heading targets, or ``None`` when none can be found."""

    countries = {country.upper() for country in entry.chapter99_applicable_countries or [] if country}
    description = entry.description or ""
    for pattern in _PRODUCT_OF_RES:
        for match in pattern.finditer(description):
            phrase = (match.group(1) or "").strip()
            for token in _COUNTRY_SPLIT_RE.split(phrase):
                iso = _country_from_token(token)
                if iso:
                    countries.add(iso)
    return sorted(countries) if countries else None


# --- selection and composition ----------------------------------------------


def chapter99_rate_text(entry: ScheduleEntry) -> str:
    return (entry.general_rate or entry.general or entry.chapter99 or "").strip()


def parse_adjustment(entry: ScheduleEntry) -> tuple[Decimal, bool]:
    """Return ``(adjustment_rate, is_pass_through_marker)`` for a heading."""

    rate_text = chapter99_rate_text(entry)
    marker = bool(_PASS_THROUGH_RE.search(rate_text))

    plus_percent = _PLUS_PERCENT_RE.search(rate_text)
    if plus_percent:
        return Decimal(plus_percent.group(1)) / HUNDRED, marker

    compiled = generate_formula_by_pattern(rate_text)
    if compiled is not None and compiled.variables == ("value",):
        multiplier = _VALUE_MULTIPLIER_RE.search(compiled.formula)
        if multiplier:
            try:
                return Decimal(multiplier.group(1)), marker
            except InvalidOperation:
                logger.warning("Unparseable multiplier in %r", compiled.formula)
    return Decimal("0"), marker


def _reference(entry: ScheduleEntry, rate: Decimal, marker: bool) -> SelectedReference:
    return SelectedReference(
        hts_number=entry.hts_number,
        description=entry.description or "",
        rate_text=chapter99_rate_text(entry),
        adjustment_rate=rate,
        is_pass_through_marker=marker,
        source=entry,
    )


def select_chapter99_entry(
    candidates: Sequence[str], index: Mapping[str, ScheduleEntry]
) -> Optional[SelectedReference]:
    """Pick the heading whose duty applies on top of the base rate.

    A heading that refers back to "the duty provided in the applicable
    subheading" always wins, whatever its position. Otherwise the first
    heading with a positive adjustment rate is used.
    """

    resolved = [(code, index[code]) for code in candidates if code in index]
    for _code, entry in resolved:
        rate, marker = parse_adjustment(entry)
        if marker:
            return _reference(entry, rate, True)
    for _code, entry in resolved:
        rate, _marker = parse_adjustment(entry)
        if rate > 0:
            return _reference(entry, rate, False)
    return None


def build_adjusted_formula(base_formula: str, adjustment_rate: Decimal, is_pass_through_marker: bool = False) -> str:
    base = (base_formula or "").strip()
    if not base:
        return "0"
    # A zero-rate pass-through heading leaves the base duty untouched.
    if adjustment_rate <= 0:
        return base
    return f"({base}) + (value * {format_number(adjustment_rate)})"


def resolve_base_formula(entry: ScheduleEntry) -> Optional[str]:
    if entry.rate_formula and entry.rate_formula.strip():
        return entry.rate_formula.strip()
    rate_text = (entry.general_rate or entry.general or "").strip()
    if not rate_text:
        return None
    compiled = generate_formula_by_pattern(rate_text, entry.unit_of_quantity)
    return compiled.formula if compiled is not None else None


def adjusted_variables(
    base_formula: str, existing: Optional[Sequence[Mapping[str, Any]]] = None
) -> List[Dict[str, Any]]:
    return merge_variable_descriptors(existing, ["value", *extract_variables(base_formula)])


def synthesize_entry(
    entry: ScheduleEntry,
    index: Mapping[str, ScheduleEntry],
    links: Optional[List[str]] = None,
) -> AdjustmentResult:
    """Run link resolution, selection and composition for one non-Chapter-99 line."""

    chapter99_links = links if links is not None else extract_chapter99_links(entry)
    non_ntr = resolve_non_ntr_countries(entry.non_ntr_applicable_countries)
    base_formula = resolve_base_formula(entry)

    if not chapter99_links:
        return AdjustmentResult(
            status=STATUS_NONE,
            hts_number=entry.hts_number,
            chapter99_links=[],
            non_ntr_countries=non_ntr,
            base_formula=base_formula,
        )

    selected = select_chapter99_entry(chapter99_links, index)
    if selected is None:
        return AdjustmentResult(
            status=STATUS_UNRESOLVED,
            hts_number=entry.hts_number,
            chapter99_links=chapter99_links,
            non_ntr_countries=non_ntr,
            base_formula=base_formula,
            reason=REASON_HEADING_NOT_FOUND,
        )

    countries = infer_applicable_countries(selected.source) if selected.source is not None else None
    if not base_formula:
        return AdjustmentResult(
            status=STATUS_UNRESOLVED,
            hts_number=entry.hts_number,
            chapter99_links=chapter99_links,
            non_ntr_countries=non_ntr,
            selected_reference=selected,
            applicable_countries=countries,
            reason=REASON_BASE_UNAVAILABLE,
        )

    return AdjustmentResult(
        status=STATUS_LINKED,
        hts_number=entry.hts_number,
        chapter99_links=chapter99_links,
        non_ntr_countries=non_ntr,
        selected_reference=selected,
        applicable_countries=countries,
        base_formula=base_formula,
        adjusted_formula=build_adjusted_formula(
            base_formula, selected.adjustment_rate, selected.is_pass_through_marker
        ),
        adjusted_formula_variables=adjusted_variables(base_formula, entry.rate_variables),
    )


def preview_entry(entry: ScheduleEntry, lookup: Mapping[str, ScheduleEntry]) -> AdjustmentResult:
    """Synthesize one entry without touching any store.

    Links stored on the entry are trusted as given (after shape filtering);
    only when there are none are footnotes scanned.
    """

    links = normalize_chapter99_links(entry.chapter99_links) if entry.chapter99_links else None
    result = synthesize_entry(entry, lookup, links=links)
    if result.adjusted_formula_variables is not None:
        result.adjusted_formula_variables = adjusted_variables(result.base_formula or "")
    return result


def build_chapter99_index(entries: Iterable[ScheduleEntry]) -> Dict[str, ScheduleEntry]:
    return {entry.hts_number: entry for entry in entries if entry.is_chapter99}
