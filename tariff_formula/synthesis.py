"""Schedule-wide passes: fill missing formulas and synthesize Chapter 99 adjustments.

Both passes compute changes in memory and flush only the entries that
actually changed, in fixed-size batches, through a :class:`ScheduleStore`.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tariff_formula.chapter99 import build_chapter99_index, same_string_list, synthesize_entry
from tariff_formula.fallback import FormulaGenerator, chunked
from tariff_formula.formula_validator import unknown_identifiers, validate_formula
from tariff_formula.models import (
    STATUS_NONE,
    STATUS_UNRESOLVED,
    SYNTHESIS_METADATA_KEY,
    AdjustmentResult,
    CompiledFormula,
    GenerationStats,
    RateSpecification,
    ScheduleEntry,
    SynthesisStats,
    variable_descriptors,
)
from tariff_formula.store import ScheduleStore

logger = logging.getLogger(__name__)

SYNTHESIS_BATCH_SIZE = 500
GENERATION_BATCH_SIZE = 100
GENERATED_AT_KEY = "generatedAt"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class BatchSynthesisOrchestrator:
    """Synthesize adjusted formulas across a whole schedule snapshot.

    The Chapter 99 index is built once per run. Entry resolution is pure, so
    it may fan out over a thread pool; changes are applied afterwards in
    input order. The provenance timestamp is ignored when deciding whether an
    entry changed, which keeps a second run over unchanged data write-free.
    """

    def __init__(
        self,
        store: ScheduleStore,
        *,
        batch_size: int = SYNTHESIS_BATCH_SIZE,
        workers: int = 1,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self.store = store
        self.batch_size = max(1, batch_size)
        self.workers = max(1, workers)
        self.clock = clock

    def synthesize(self, entries: Optional[Sequence[ScheduleEntry]] = None) -> SynthesisStats:
        if entries is None:
            entries = self.store.load_entries()
        index = build_chapter99_index(entries)
        stats = SynthesisStats()

        targets: List[ScheduleEntry] = []
        for entry in entries:
            stats.processed += 1
            if not entry.is_chapter99:
                targets.append(entry)

        to_save: List[ScheduleEntry] = []
        for entry, result in zip(targets, self._resolve(targets, index)):
            if self._apply(entry, result, stats):
                to_save.append(entry)

        stats.updated = self._flush(to_save)
        logger.info(
            "Chapter99 synthesis complete: processed=%d, linked=%d, updated=%d, unresolved=%d, "
            "nonNtrDefaultsApplied=%d",
            stats.processed,
            stats.linked,
            stats.updated,
            stats.unresolved,
            stats.non_ntr_defaults_applied,
        )
        return stats

    def _resolve(self, targets: Sequence[ScheduleEntry], index: Dict[str, ScheduleEntry]) -> List[AdjustmentResult]:
        if self.workers == 1 or len(targets) < 2:
            return [synthesize_entry(entry, index) for entry in targets]
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            return list(pool.map(lambda entry: synthesize_entry(entry, index), targets))

    def _apply(self, entry: ScheduleEntry, result: AdjustmentResult, stats: SynthesisStats) -> bool:
        mutated = False
        if not same_string_list(entry.non_ntr_applicable_countries, result.non_ntr_countries):
            entry.non_ntr_applicable_countries = list(result.non_ntr_countries)
            stats.non_ntr_defaults_applied += 1
            mutated = True

        if result.status == STATUS_NONE:
            if entry.chapter99_links:
                entry.chapter99_links = None
                mutated = True
            return mutated

        stats.linked += 1
        if not same_string_list(entry.chapter99_links, result.chapter99_links):
            entry.chapter99_links = list(result.chapter99_links)
            mutated = True

        selected = result.selected_reference
        if result.status == STATUS_UNRESOLVED:
            stats.unresolved += 1
            block: Dict[str, Any] = {
                "unresolved": True,
                "reason": result.reason,
                "links": list(result.chapter99_links),
            }
            if selected is not None:
                block["selectedChapter99"] = selected.hts_number
            return self._set_provenance(entry, block) or mutated

        if selected is None or result.adjusted_formula is None:
            return mutated
        if entry.chapter99 != selected.rate_text:
            entry.chapter99 = selected.rate_text
            mutated = True
        if not same_string_list(entry.chapter99_applicable_countries, result.applicable_countries):
            entry.chapter99_applicable_countries = result.applicable_countries
            mutated = True
        if entry.adjusted_formula != result.adjusted_formula:
            entry.adjusted_formula = result.adjusted_formula
            mutated = True
        if entry.adjusted_formula_variables != result.adjusted_formula_variables:
            entry.adjusted_formula_variables = result.adjusted_formula_variables
            mutated = True
        if not entry.is_adjusted_formula_generated:
            entry.is_adjusted_formula_generated = True
            mutated = True

        block = {
            "unresolved": False,
            "links": list(result.chapter99_links),
            "selectedChapter99": selected.hts_number,
            "adjustmentRate": float(selected.adjustment_rate),
            "referencesApplicableSubheading": selected.is_pass_through_marker,
        }
        return self._set_provenance(entry, block) or mutated

    def _set_provenance(self, entry: ScheduleEntry, block: Dict[str, Any]) -> bool:
        current = (entry.metadata or {}).get(SYNTHESIS_METADATA_KEY)
        if isinstance(current, dict):
            comparable = {key: item for key, item in current.items() if key != GENERATED_AT_KEY}
            if comparable == block:
                return False
        metadata = dict(entry.metadata or {})
        metadata[SYNTHESIS_METADATA_KEY] = {**block, GENERATED_AT_KEY: self.clock()}
        entry.metadata = metadata
        return True

    def _flush(self, to_save: Sequence[ScheduleEntry]) -> int:
        updated = 0
        for batch in chunked(to_save, self.batch_size):
            try:
                self.store.save_entries(batch)
            except Exception:
                logger.exception("Failed to save Chapter99 synthesis batch of %d entries", len(batch))
                continue
            updated += len(batch)
        return updated


class MissingFormulaGenerator:
    """Compile general and column 2 rates for entries that have no formula yet."""

    def __init__(
        self,
        generator: FormulaGenerator,
        store: ScheduleStore,
        *,
        batch_size: int = GENERATION_BATCH_SIZE,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self.generator = generator
        self.store = store
        self.batch_size = max(1, batch_size)
        self.clock = clock

    def generate_missing_formulas(self, entries: Optional[Sequence[ScheduleEntry]] = None) -> GenerationStats:
        if entries is None:
            entries = self.store.load_entries()
        general = [
            entry
            for entry in entries
            if not (entry.rate_formula or "").strip() and (entry.general_rate or "").strip()
        ]
        other = [
            entry
            for entry in entries
            if not (entry.other_rate_formula or "").strip() and (entry.other_rate or "").strip()
        ]

        stats = GenerationStats()
        logger.info("Generating formulas for %d general rates", len(general))
        stats.general_updated, failed = self._run(general, other=False)
        stats.failed += failed
        logger.info("Generating formulas for %d other rates", len(other))
        stats.other_updated, failed = self._run(other, other=True)
        stats.failed += failed
        return stats

    def _run(self, entries: Sequence[ScheduleEntry], *, other: bool) -> Tuple[int, int]:
        label = "Other" if other else "General"
        updated = 0
        failed = 0
        for batch in chunked(entries, self.batch_size):
            specs = [
                RateSpecification(
                    text=(entry.other_rate if other else entry.general_rate) or "",
                    unit_of_quantity=entry.unit_of_quantity,
                )
                for entry in batch
            ]
            try:
                results = self.generator.resolve_formula_batch(specs)
                written = [
                    entry
                    for entry, result in zip(batch, results)
                    if result is not None and self._apply(entry, result, other=other)
                ]
                if written:
                    self.store.save_entries(written)
            except Exception as exc:
                failed += len(batch)
                logger.error("%s batch failed: %s", label, exc)
                continue
            updated += len(written)
            failed += len(batch) - len(written)
        return updated, failed

    def _apply(self, entry: ScheduleEntry, result: CompiledFormula, *, other: bool) -> bool:
        check = validate_formula(result.formula)
        if not check.valid or unknown_identifiers(result.formula):
            logger.warning(
                "Skipping unsafe formula %r for %s: %s",
                result.formula,
                entry.hts_number,
                check.error or "unknown variables",
            )
            return False

        prefix = "otherFormula" if other else "formula"
        metadata = dict(entry.metadata or {})
        metadata[f"{prefix}Confidence"] = result.confidence
        metadata[f"{prefix}Method"] = result.method
        metadata[f"{prefix}GeneratedAt"] = self.clock()
        entry.metadata = metadata

        descriptors = variable_descriptors(check.variables)
        if other:
            entry.other_rate_formula = result.formula
            entry.other_rate_variables = descriptors
            entry.is_other_formula_generated = True
        else:
            entry.rate_formula = result.formula
            entry.rate_variables = descriptors
            entry.is_formula_generated = True
        return True
