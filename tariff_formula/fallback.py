"""Generative fallback for rate text the pattern grammar cannot resolve.

``GenerativeFallbackCompiler`` owns the prompts and the response contract.
``FormulaGenerator`` is the dispatcher the rest of the package uses: pattern
first, then the provider, single or batched.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from theine import Cache

from tariff_formula.errors import FormulaGenerationError
from tariff_formula.formula_validator import unknown_identifiers, validate_formula
from tariff_formula.llm import (
    FORMULA_BATCH_RESPONSE_SCHEMA,
    FORMULA_RESPONSE_SCHEMA,
    FormulaBatchItem,
    FormulaProvider,
    FormulaResponse,
    strip_json_fence,
)
from tariff_formula.models import (
    METHOD_AI,
    METHOD_PATTERN,
    CompiledFormula,
    NeedsFallback,
    RateSpecification,
)
from tariff_formula.normalizer import normalize_rate_text
from tariff_formula.pattern_compiler import compile_pattern

logger = logging.getLogger(__name__)

AI_BATCH_SIZE = 100
CONFIDENCE_DISCOUNT = 0.1
AI_CACHE_TTL_SECONDS = 24 * 60 * 60

_RULES = """Available variables:
- value: The declared value of the goods (in dollars)
- weight: Weight in kg
- quantity: Number of items

Rules:
1. Use only the variables above with the operators *, +, -, /, ()
2. For percentages, convert to decimal (5% -> 0.05)
3. For specific duties, use the appropriate variable
4. For compound rates, combine the components with +
5. Return 0 for "Free" or no duty
6. Use the conservative estimate (lower value) for ranges"""

SINGLE_PROMPT = """Convert this customs duty rate into a mathematical formula.

Rate: "{rate_text}"
Unit of quantity: {unit}

{rules}

Return JSON with "formula", "variables", "confidence" (0 to 1) and a short "explanation".
"""

BATCH_PROMPT = """Convert each customs duty rate into a mathematical formula.

{rules}

Return JSON with a "formulas" array holding one object per item, echoing its index.

Items:
{items}
"""


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


def discount_confidence(confidence: float) -> float:
    return max(0.0, min(1.0, confidence - CONFIDENCE_DISCOUNT))


def _unit_label(unit_of_quantity: Optional[str]) -> str:
    return (unit_of_quantity or "").strip() or "Not specified"


def _screen_formula(formula: str) -> Tuple[List[str], Optional[str]]:
    """Return the formula's variables, or an error when it is unsafe or names anything else."""

    check = validate_formula(formula)
    if not check.valid:
        return [], check.error or "unsafe formula"
    unknown = unknown_identifiers(formula)
    if unknown:
        return [], f"unknown variables in formula: {', '.join(unknown)}"
    return check.variables, None


class GenerativeFallbackCompiler:
    """Compile rate text through a :class:`FormulaProvider`.

    Single mode is strict: any transport error, empty body, malformed JSON,
    schema violation or unsafe formula raises :class:`FormulaGenerationError`.
    Batch mode drops bad rows and returns whatever indices survived; callers
    must check for missing indices.
    """

    def __init__(self, provider: FormulaProvider, *, timeout: Optional[float] = None) -> None:
        self.provider = provider
        self.timeout = timeout

    def compile(self, spec: RateSpecification) -> CompiledFormula:
        prompt = SINGLE_PROMPT.format(
            rate_text=spec.text.strip(),
            unit=_unit_label(spec.unit_of_quantity),
            rules=_RULES,
        )
        try:
            raw = self.provider.complete(prompt, FORMULA_RESPONSE_SCHEMA, timeout=self.timeout)
        except Exception as exc:
            raise FormulaGenerationError(spec.text, str(exc)) from exc
        if not raw or not raw.strip():
            raise FormulaGenerationError(spec.text, "empty response")
        try:
            parsed = FormulaResponse.model_validate_json(strip_json_fence(raw))
        except ValidationError as exc:
            logger.error("Rejected AI formula response for %r: %s", spec.text, raw)
            raise FormulaGenerationError(spec.text, "response violates the formula schema") from exc

        variables, problem = _screen_formula(parsed.formula)
        if problem:
            raise FormulaGenerationError(spec.text, problem)
        if parsed.explanation:
            logger.debug("AI formula for %r: %s (%s)", spec.text, parsed.formula, parsed.explanation)
        return CompiledFormula(
            formula=parsed.formula,
            variables=tuple(variables),
            confidence=discount_confidence(parsed.confidence),
            method=METHOD_AI,
        )

    def compile_batch(self, items: Sequence[Tuple[int, RateSpecification]]) -> Dict[int, CompiledFormula]:
        if not items:
            return {}
        if len(items) > AI_BATCH_SIZE:
            raise ValueError(f"AI batches are limited to {AI_BATCH_SIZE} rates, got {len(items)}")

        lines = "\n".join(
            f'#{index} | Rate: "{spec.text.strip()}" | Unit: {_unit_label(spec.unit_of_quantity)}'
            for index, spec in items
        )
        prompt = BATCH_PROMPT.format(rules=_RULES, items=lines)
        try:
            raw = self.provider.complete(prompt, FORMULA_BATCH_RESPONSE_SCHEMA, timeout=self.timeout)
            payload = json.loads(strip_json_fence(raw))
        except Exception as exc:
            logger.error("AI batch formula generation failed: %s", exc)
            return {}

        rows = payload.get("formulas") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            logger.error("AI batch response is not a list of formulas: %s", raw)
            return {}

        requested = {index for index, _ in items}
        results: Dict[int, CompiledFormula] = {}
        for row in rows:
            try:
                item = FormulaBatchItem.model_validate(row)
            except ValidationError as exc:
                logger.warning("Dropping invalid AI batch row %r: %s", row, exc.errors())
                continue
            if item.index not in requested or item.index in results:
                logger.warning("Dropping AI batch row with unexpected index %s", item.index)
                continue
            variables, problem = _screen_formula(item.formula)
            if problem:
                logger.warning("Dropping unsafe AI formula %r: %s", item.formula, problem)
                continue
            results[item.index] = CompiledFormula(
                formula=item.formula,
                variables=tuple(variables),
                confidence=discount_confidence(item.confidence),
                method=METHOD_AI,
            )

        missing = len(requested) - len(results)
        if missing:
            logger.warning("AI batch returned no usable formula for %d of %d rates", missing, len(requested))
        return results


class FormulaGenerator:
    """Pattern-first formula generation with generative fallback.

    Without a fallback compiler the generator is pattern-only:
    ``generate_formula*`` raise :class:`FormulaGenerationError` for rates that
    need the provider, ``resolve_formula_batch`` reports them as ``None``.
    """

    def __init__(
        self,
        fallback: Optional[GenerativeFallbackCompiler] = None,
        *,
        ai_batch_size: int = AI_BATCH_SIZE,
        cache_size: int = 1024,
    ) -> None:
        self.fallback = fallback
        self.ai_batch_size = max(1, min(ai_batch_size, AI_BATCH_SIZE))
        self._cache = Cache(cache_size)

    @staticmethod
    def _cache_key(spec: RateSpecification) -> str:
        return f"{normalize_rate_text(spec.text)}|{(spec.unit_of_quantity or '').strip().lower()}"

    def _cached(self, spec: RateSpecification) -> Optional[CompiledFormula]:
        value, ok = self._cache.get(self._cache_key(spec))
        return value if ok else None

    def _remember(self, spec: RateSpecification, compiled: CompiledFormula) -> None:
        self._cache.set(self._cache_key(spec), compiled, ttl=timedelta(seconds=AI_CACHE_TTL_SECONDS))

    def _fallback_single(self, pending: NeedsFallback) -> CompiledFormula:
        spec = RateSpecification(text=pending.text, unit_of_quantity=pending.unit_of_quantity)
        cached = self._cached(spec)
        if cached is not None:
            return cached
        if self.fallback is None:
            raise FormulaGenerationError(pending.text, "no generative provider configured")
        compiled = self.fallback.compile(spec)
        self._remember(spec, compiled)
        return compiled

    def generate_formula(self, rate_text: Optional[str], unit_of_quantity: Optional[str] = None) -> CompiledFormula:
        outcome = compile_pattern(RateSpecification(text=rate_text or "", unit_of_quantity=unit_of_quantity))
        if isinstance(outcome, CompiledFormula):
            return outcome
        logger.info("Using AI to parse rate: %s", rate_text)
        return self._fallback_single(outcome)

    def generate_formula_batch(self, rates: Sequence[RateSpecification]) -> List[CompiledFormula]:
        """Compile every rate, batching the ones that need the provider.

        Indices the batch call drops are retried one by one; a failure there
        propagates so no rate is silently left without a formula.
        """

        results: List[Optional[CompiledFormula]] = [None] * len(rates)
        pending: List[Tuple[int, RateSpecification]] = []
        for index, spec in enumerate(rates):
            outcome = compile_pattern(spec)
            if isinstance(outcome, CompiledFormula):
                results[index] = outcome
                continue
            cached = self._cached(spec)
            if cached is not None:
                results[index] = cached
                continue
            pending.append((index, spec))

        if self.fallback is not None:
            for batch in chunked(pending, self.ai_batch_size):
                resolved = self.fallback.compile_batch(batch)
                for index, spec in batch:
                    compiled = resolved.get(index)
                    if compiled is not None:
                        results[index] = compiled
                        self._remember(spec, compiled)

        final: List[CompiledFormula] = []
        for index, compiled in enumerate(results):
            if compiled is None:
                spec = rates[index]
                compiled = self._fallback_single(NeedsFallback(text=spec.text, unit_of_quantity=spec.unit_of_quantity))
            final.append(compiled)

        self._log_batch(final)
        return final

    def resolve_formula_batch(self, rates: Sequence[RateSpecification]) -> List[Optional[CompiledFormula]]:
        """Per-rate results for a batch; ``None`` where a pattern-only generator found no rule.

        With a fallback configured this is :meth:`generate_formula_batch`.
        """

        if self.fallback is not None:
            return list(self.generate_formula_batch(rates))
        results: List[Optional[CompiledFormula]] = []
        for spec in rates:
            outcome = compile_pattern(spec)
            if isinstance(outcome, CompiledFormula):
                results.append(outcome)
            else:
                logger.info("No pattern rule matched rate: %s", spec.text)
                results.append(None)
        self._log_batch([item for item in results if item is not None])
        return results

    @staticmethod
    def _log_batch(final: Sequence[CompiledFormula]) -> None:
        pattern_count = sum(1 for item in final if item.method == METHOD_PATTERN)
        logger.info(
            "Generated %d formulas: %d by pattern, %d by AI",
            len(final),
            pattern_count,
            len(final) - pattern_count,
        )
