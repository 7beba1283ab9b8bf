from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from tariff_formula.chapter99 import REASON_BASE_UNAVAILABLE, REASON_HEADING_NOT_FOUND
from tariff_formula.fallback import FormulaGenerator, GenerativeFallbackCompiler
from tariff_formula.models import ScheduleEntry, SynthesisStats
from tariff_formula.store import InMemoryScheduleStore
from tariff_formula.synthesis import BatchSynthesisOrchestrator, MissingFormulaGenerator

FIXED_TIME = "2026-01-01T00:00:00+00:00"
WATCH_RATE = "5% on the case plus 10% on the strap"


def _clock():
    return FIXED_TIME


@pytest.fixture
def snapshot(chapter99_entries, peanut_entry):
    return [
        *chapter99_entries,
        peanut_entry,
        ScheduleEntry(hts_number="0101.21.00", chapter="01", general_rate="Free", chapter99_links=["8471.30.01"]),
        ScheduleEntry(hts_number="0202.30.50", chapter="02", general_rate="5%", chapter99_links=["9903.99.99"]),
        ScheduleEntry(hts_number="0303.11.00", chapter="03", general_rate="see note 3", footnotes="See 9903.88.15."),
    ]


@pytest.fixture
def store(snapshot):
    return InMemoryScheduleStore(snapshot)


def test_synthesis_over_snapshot(store):
    stats = BatchSynthesisOrchestrator(store, clock=_clock).synthesize()

    assert stats == SynthesisStats(processed=7, updated=4, linked=3, unresolved=2, non_ntr_defaults_applied=4)

    peanut = store.get("1202.41.80")
    assert peanut.adjusted_formula == "(value * 1.638) + (value * 0.075)"
    assert peanut.chapter99 == "The duty provided in the applicable subheading + 7.5%"
    assert peanut.chapter99_applicable_countries == ["CN"]
    assert peanut.chapter99_links == ["9903.88.15", "9904.12.01", "9904.12.19"]
    assert peanut.non_ntr_applicable_countries == ["BY", "CU", "KP", "RU"]
    assert peanut.is_adjusted_formula_generated is True
    assert peanut.metadata["chapter99Synthesis"] == {
        "unresolved": False,
        "links": ["9903.88.15", "9904.12.01", "9904.12.19"],
        "selectedChapter99": "9903.88.15",
        "adjustmentRate": 0.075,
        "referencesApplicableSubheading": True,
        "generatedAt": FIXED_TIME,
    }

    assert store.get("0101.21.00").chapter99_links is None

    missing_heading = store.get("0202.30.50").metadata["chapter99Synthesis"]
    assert missing_heading == {
        "unresolved": True,
        "reason": REASON_HEADING_NOT_FOUND,
        "links": ["9903.99.99"],
        "generatedAt": FIXED_TIME,
    }

    missing_base = store.get("0303.11.00")
    assert missing_base.adjusted_formula is None
    assert missing_base.metadata["chapter99Synthesis"]["reason"] == REASON_BASE_UNAVAILABLE
    assert missing_base.metadata["chapter99Synthesis"]["selectedChapter99"] == "9903.88.15"


def test_chapter99_headings_are_not_rewritten(store):
    BatchSynthesisOrchestrator(store, clock=_clock).synthesize()
    written = {hts for batch in store.save_calls for hts in batch}
    assert written == {"1202.41.80", "0101.21.00", "0202.30.50", "0303.11.00"}


def test_second_run_is_write_free(store):
    BatchSynthesisOrchestrator(store, clock=_clock).synthesize()
    writes = store.writes

    stats = BatchSynthesisOrchestrator(store, clock=lambda: "2026-02-01T00:00:00+00:00").synthesize()

    assert stats.updated == 0
    assert stats.linked == 3
    assert store.writes == writes
    assert store.get("1202.41.80").metadata["chapter99Synthesis"]["generatedAt"] == FIXED_TIME


def test_changes_are_flushed_in_batches(store):
    BatchSynthesisOrchestrator(store, batch_size=2, clock=_clock).synthesize()
    assert [len(batch) for batch in store.save_calls] == [2, 2]


def test_thread_pool_matches_sequential_run(snapshot):
    sequential = InMemoryScheduleStore(snapshot)
    pooled = InMemoryScheduleStore(snapshot)

    first = BatchSynthesisOrchestrator(sequential, clock=_clock).synthesize()
    second = BatchSynthesisOrchestrator(pooled, workers=4, clock=_clock).synthesize()

    assert first == second
    assert [entry.to_record() for entry in sequential.load_entries()] == [
        entry.to_record() for entry in pooled.load_entries()
    ]


class _FlakyStore(InMemoryScheduleStore):
    def __init__(self, entries):
        super().__init__(entries)
        self.failures = 1

    def save_entries(self, entries):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("connection reset")
        super().save_entries(entries)


def test_failed_batch_is_not_counted_as_updated(snapshot):
    store = _FlakyStore(snapshot)
    stats = BatchSynthesisOrchestrator(store, batch_size=2, clock=_clock).synthesize()
    assert stats.updated == 2
    assert store.writes == 2


def test_changed_heading_rate_updates_linked_entries(store):
    BatchSynthesisOrchestrator(store, clock=_clock).synthesize()
    entries = store.load_entries()
    heading = next(entry for entry in entries if entry.hts_number == "9903.88.15")
    heading.general_rate = "The duty provided in the applicable subheading + 25%"

    stats = BatchSynthesisOrchestrator(store, clock=_clock).synthesize(entries)

    assert stats.updated == 1
    peanut = store.get("1202.41.80")
    assert peanut.adjusted_formula == "(value * 1.638) + (value * 0.25)"
    assert peanut.metadata["chapter99Synthesis"]["adjustmentRate"] == 0.25


@pytest.fixture
def rate_entries():
    return [
        ScheduleEntry(hts_number="9102.11.10", chapter="91", general_rate="5%", other_rate="25%"),
        ScheduleEntry(hts_number="9102.11.25", chapter="91", unit_of_quantity="No.", general_rate=WATCH_RATE),
        ScheduleEntry(hts_number="9102.11.30", chapter="91", general_rate="10%", rate_formula="value * 0.1"),
    ]


def test_missing_formulas_are_generated(make_provider, rate_entries):
    provider = make_provider(
        {
            "formulas": [
                {"index": 1, "formula": "value * 0.05 + value * 0.1", "variables": ["value"], "confidence": 0.6}
            ]
        }
    )
    store = InMemoryScheduleStore(rate_entries)
    generator = FormulaGenerator(GenerativeFallbackCompiler(provider))

    stats = MissingFormulaGenerator(generator, store, clock=_clock).generate_missing_formulas()

    assert (stats.general_updated, stats.other_updated, stats.failed) == (2, 1, 0)
    assert store.save_calls == [["9102.11.10", "9102.11.25"], ["9102.11.10"]]

    plain = store.get("9102.11.10")
    assert plain.rate_formula == "value * 0.05"
    assert plain.other_rate_formula == "value * 0.25"
    assert plain.is_formula_generated is True
    assert plain.is_other_formula_generated is True
    assert plain.metadata["formulaMethod"] == "pattern"
    assert plain.metadata["otherFormulaConfidence"] == 1.0
    assert plain.metadata["otherFormulaGeneratedAt"] == FIXED_TIME

    watch = store.get("9102.11.25")
    assert watch.rate_formula == "value * 0.05 + value * 0.1"
    assert watch.rate_variables == [{"name": "value", "type": "number", "description": "Declared value of goods in USD"}]
    assert watch.metadata["formulaMethod"] == "ai"
    assert watch.metadata["formulaConfidence"] == pytest.approx(0.5)
    assert watch.other_rate_formula is None

    assert store.get("9102.11.30").rate_formula == "value * 0.1"


@pytest.mark.parametrize("batch_size, expected", [(1, (1, 1, 1)), (100, (1, 1, 1))])
def test_pattern_only_failures_are_counted_per_rate(rate_entries, batch_size, expected):
    store = InMemoryScheduleStore(rate_entries)
    runner = MissingFormulaGenerator(FormulaGenerator(), store, batch_size=batch_size, clock=_clock)

    stats = runner.generate_missing_formulas()

    assert (stats.general_updated, stats.other_updated, stats.failed) == expected
    assert store.get("9102.11.25").rate_formula is None


def test_unmatched_rate_does_not_block_compilable_rates():
    entries = [ScheduleEntry(hts_number=f"9102.19.{20 + index}", general_rate="5%") for index in range(5)]
    entries.append(ScheduleEntry(hts_number="9102.19.40", general_rate=WATCH_RATE))
    store = InMemoryScheduleStore(entries)

    stats = MissingFormulaGenerator(FormulaGenerator(), store, clock=_clock).generate_missing_formulas()

    assert (stats.general_updated, stats.other_updated, stats.failed) == (5, 0, 1)
    assert [len(batch) for batch in store.save_calls] == [5]
    assert store.get("9102.19.20").rate_formula == "value * 0.05"
    assert store.get("9102.19.40").rate_formula is None
