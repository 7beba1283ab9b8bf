"""Canonicalise raw rate text before it reaches the pattern grammar."""

from __future__ import annotations

import re
from decimal import Decimal

_WHITESPACE_RE = re.compile(r"\s+")
_AD_VAL_RE = re.compile(r"ad val\.")
_PER_CENT_RE = re.compile(r"per\s+cent")
_KGS_RE = re.compile(r"kgs?\b")
_NUMBER_ABBREV_RE = re.compile(r"\bno\.\b")


def normalize_rate_text(text: str) -> str:
    """Lower-case, collapse whitespace and unify common abbreviations.

    >>> normalize_rate_text("  5 Per  Cent  Ad Val. ")
    '5 percent ad valorem'
    """

    cleaned = (text or "").strip().lower()
    cleaned = _WHITESPACE_RE.sub(" ", cleaned)
    cleaned = _AD_VAL_RE.sub("ad valorem", cleaned)
    cleaned = _PER_CENT_RE.sub("percent", cleaned)
    cleaned = _KGS_RE.sub("kg", cleaned)
    return _NUMBER_ABBREV_RE.sub("number", cleaned)


def format_number(value: Decimal) -> str:
    """Render a Decimal positionally, without exponent or trailing zeros."""

    text = format(value.normalize(), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in {"", "-0"}:
        return "0"
    return text
