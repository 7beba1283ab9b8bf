"""Data shapes exchanged between the compiler, the synthesizer and the store."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

VARIABLE_NAMES: Tuple[str, ...] = ("value", "weight", "quantity")

METHOD_PATTERN = "pattern"
METHOD_AI = "ai"

STATUS_LINKED = "LINKED"
STATUS_UNRESOLVED = "UNRESOLVED"
STATUS_NONE = "NONE"

SYNTHESIS_METADATA_KEY = "chapter99Synthesis"
SOURCE_FOOTNOTES_KEY = "sourceFootnotes"

_VARIABLE_DESCRIPTIONS = {
    "value": "Declared value of goods in USD",
    "weight": "Weight of goods in kilograms",
    "quantity": "Number of imported items",
}


@dataclass(frozen=True)
class RateSpecification:
    """Rate text plus the unit-of-quantity hint printed beside it."""

    text: str
    unit_of_quantity: Optional[str] = None


@dataclass(frozen=True)
class CompiledFormula:
    formula: str
    variables: Tuple[str, ...]
    confidence: float
    method: str = METHOD_PATTERN


@dataclass(frozen=True)
class NeedsFallback:
    """No deterministic rule matched; the rate must go to the generative compiler."""

    text: str
    unit_of_quantity: Optional[str] = None


PatternOutcome = Union[CompiledFormula, NeedsFallback]


def zero_formula() -> CompiledFormula:
    return CompiledFormula(formula="0", variables=(), confidence=1.0, method=METHOD_PATTERN)


def describe_variable(name: str) -> str:
    return _VARIABLE_DESCRIPTIONS.get(name, "Input variable")


def variable_descriptors(names: Sequence[str]) -> List[Dict[str, Any]]:
    """Build the persisted ``{name, type, description}`` list for formula variables."""

    return merge_variable_descriptors(None, names)


def merge_variable_descriptors(
    existing: Optional[Sequence[Mapping[str, Any]]],
    names: Sequence[str],
) -> List[Dict[str, Any]]:
    """Keep existing descriptors (first wins by name) and append any missing names."""

    seen: set[str] = set()
    merged: List[Dict[str, Any]] = []
    for descriptor in existing or []:
        if not isinstance(descriptor, Mapping):
            continue
        name = descriptor.get("name")
        if not name or name in seen:
            continue
        seen.add(name)
        merged.append(dict(descriptor))
    for name in names:
        if not name or name in seen:
            continue
        seen.add(name)
        merged.append({"name": name, "type": "number", "description": describe_variable(name)})
    return merged


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_RECORD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "hts_number": ("code",),
    "general_rate": ("general_rate_of_duty", "generalRateText"),
    "other_rate": ("column_2_rate_of_duty", "otherRateText"),
    "non_ntr_applicable_countries": ("nonNtrCountries",),
}


@dataclass
class ScheduleEntry:
    """One tariff schedule line as read from a snapshot or the ``hts_entries`` table."""

    hts_number: str
    chapter: Optional[str] = None
    description: Optional[str] = None
    unit_of_quantity: Optional[str] = None
    general_rate: Optional[str] = None
    general: Optional[str] = None
    other_rate: Optional[str] = None
    chapter99: Optional[str] = None
    chapter99_links: Optional[List[str]] = None
    footnotes: Optional[Union[str, List[Any]]] = None
    chapter99_applicable_countries: Optional[List[str]] = None
    non_ntr_applicable_countries: Optional[List[str]] = None
    rate_formula: Optional[str] = None
    rate_variables: Optional[List[Dict[str, Any]]] = None
    other_rate_formula: Optional[str] = None
    other_rate_variables: Optional[List[Dict[str, Any]]] = None
    adjusted_formula: Optional[str] = None
    adjusted_formula_variables: Optional[List[Dict[str, Any]]] = None
    is_formula_generated: bool = False
    is_other_formula_generated: bool = False
    is_adjusted_formula_generated: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chapter_code(self) -> str:
        chapter = (self.chapter or "").strip()
        if chapter:
            return chapter.zfill(2)
        digits = "".join(ch for ch in self.hts_number if ch.isdigit())
        return digits[:2]

    @property
    def is_chapter99(self) -> bool:
        return self.chapter_code == "99"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ScheduleEntry":
        values: Dict[str, Any] = {}
        for item in fields(cls):
            for key in (item.name, _camel_case(item.name), *_RECORD_ALIASES.get(item.name, ())):
                if key in record:
                    values[item.name] = record[key]
                    break
        if not values.get("hts_number"):
            raise ValueError(f"schedule record is missing an HTS number: {dict(record)!r}")
        values["hts_number"] = str(values["hts_number"]).strip()
        for flag in ("is_formula_generated", "is_other_formula_generated", "is_adjusted_formula_generated"):
            values[flag] = bool(values.get(flag))
        values["metadata"] = dict(values.get("metadata") or {})
        return cls(**values)

    def to_record(self) -> Dict[str, Any]:
        return {item.name: copy.deepcopy(getattr(self, item.name)) for item in fields(self)}


@dataclass
class SelectedReference:
    hts_number: str
    description: str
    rate_text: str
    adjustment_rate: Decimal
    is_pass_through_marker: bool
    source: Optional[ScheduleEntry] = field(default=None, repr=False, compare=False)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "htsNumber": self.hts_number,
            "description": self.description,
            "rateText": self.rate_text,
            "adjustmentRate": float(self.adjustment_rate),
            "referencesApplicableSubheading": self.is_pass_through_marker,
        }


@dataclass
class AdjustmentResult:
    """Outcome of synthesizing one entry against the Chapter 99 index."""

    status: str
    hts_number: str
    chapter99_links: List[str]
    non_ntr_countries: List[str]
    selected_reference: Optional[SelectedReference] = None
    applicable_countries: Optional[List[str]] = None
    base_formula: Optional[str] = None
    adjusted_formula: Optional[str] = None
    adjusted_formula_variables: Optional[List[Dict[str, Any]]] = None
    reason: Optional[str] = None


@dataclass
class SynthesisStats:
    processed: int = 0
    updated: int = 0
    linked: int = 0
    unresolved: int = 0
    non_ntr_defaults_applied: int = 0


@dataclass
class GenerationStats:
    general_updated: int = 0
    other_updated: int = 0
    failed: int = 0
